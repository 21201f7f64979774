"""
ボイス接続のエラー分類

致命的なエラーはすべてクリーンアップ + Disconnected 通知に収束する
"""

from typing import Optional


class VoiceError(Exception):
    """ボイス接続エラーの基底クラス"""


class VoiceConnectionError(VoiceError, ConnectionError):
    """Voice Gatewayに接続できない、またはハンドシェイク前に切断された"""

    def __init__(self, message: str, code: Optional[int] = None):
        super().__init__(message)
        self.code = code


class NegotiationError(VoiceError):
    """SDPの組み立て・適用に失敗"""


class CredentialError(NegotiationError):
    """バックエンドから取得したボイスサーバー情報が不足・不正（ソケットを開く前に中断）"""


class DeviceError(VoiceError):
    """キャプチャデバイスが使えない（復帰可能: 聴覚オフで続行）"""


class ProtocolError(VoiceError):
    """不正なフレーム・未知のopcode（無視してログのみ）"""
