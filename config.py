"""
voice-gateway-client 設定

環境変数から読み込み、デフォルト値を提供
"""

import os
from typing import Optional
from dotenv import load_dotenv

# 環境変数の読み込み
env_path = os.path.expanduser(os.getenv("VOICE_ENV_FILE", "~/.voice-gateway/.env"))
load_dotenv(env_path)


def _extra_ice_servers() -> list:
    """VOICE_ICE_SERVERS（カンマ区切りのURL）を読み込む"""
    raw = os.getenv("VOICE_ICE_SERVERS", "")
    return [{"urls": url.strip()} for url in raw.split(",") if url.strip()]


class Config:
    """アプリケーション設定"""

    # バックエンド (join/leave API)
    API_BASE_URL = os.getenv("VOICE_API_BASE_URL", "http://127.0.0.1:8080").rstrip("/")
    API_TIMEOUT = 25  # 秒（バックエンドはボイスサーバー情報を最大20秒待つ）

    # Voice Gateway設定
    GATEWAY_VERSION = 7
    DEFAULT_HEARTBEAT_INTERVAL_MS = 13750
    GATEWAY_OPEN_TIMEOUT = 10  # 秒（WebSocketハンドシェイク）

    # WebRTC設定
    ICE_SERVERS = _extra_ice_servers() + [
        {"urls": "stun:stun.l.google.com:19302"},
        # TURN を使う場合
        # {"urls": "turn:your-turn-server:3478", "username": "user", "credential": "pass"}
    ]
    ICE_GATHER_TIMEOUT = 3.0  # 秒（候補収集が終わらなくてもこれで打ち切る）
    OPUS_PRIORITY = 1000
    OPUS_PAYLOAD_TYPE = 120

    # オーディオ設定
    SAMPLE_RATE = 48000
    CHANNELS = 1                  # モノラル
    SAMPLES_PER_FRAME = 960       # 20ms at 48kHz

    # デバイス設定（None = 自動検出）
    INPUT_DEVICE_INDEX = None
    OUTPUT_DEVICE_INDEX = None

    # パス設定
    BASE_DIR = os.path.expanduser("~/.voice-gateway")
    LOG_DIR = os.path.join(BASE_DIR, "logs")

    @classmethod
    def get_api_token(cls) -> str:
        """バックエンドのセッショントークンを取得"""
        token = os.getenv("VOICE_API_TOKEN")
        if not token:
            raise ValueError("VOICE_API_TOKEN が設定されていません")
        return token

    @classmethod
    def get_device_index(cls, kind: str) -> Optional[int]:
        """VOICE_INPUT_DEVICE / VOICE_OUTPUT_DEVICE があれば優先"""
        default = cls.INPUT_DEVICE_INDEX if kind == "input" else cls.OUTPUT_DEVICE_INDEX
        raw = os.getenv(f"VOICE_{kind.upper()}_DEVICE")
        if raw is None or raw == "":
            return default
        try:
            return int(raw)
        except ValueError:
            return default
