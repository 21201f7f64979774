"""
ボイスセッションのデータモデル

Voice Gatewayのopcode、メッセージ、SDPから取り出す値をまとめる
"""

import json
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any, Dict, List, Optional

from config import Config

from .errors import CredentialError, NegotiationError, ProtocolError


class VoiceOpcode(IntEnum):
    """Voice Gatewayのopcode"""
    IDENTIFY = 0
    SELECT_PROTOCOL = 1
    READY = 2
    HEARTBEAT = 3
    SESSION_DESCRIPTION = 4
    SPEAKING = 5
    HEARTBEAT_ACK = 6
    HELLO = 8
    RESUMED = 9
    CLIENT_DISCONNECT = 13


class SessionState(Enum):
    """ボイスセッションの状態"""
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


@dataclass
class VoiceSession:
    """参加中（または参加処理中）のボイスチャンネル"""
    guild_id: str
    channel_id: str
    state: SessionState = SessionState.IDLE
    # False のまま Connected ならメディアなし（縮退モード）
    media_connected: bool = False

    @property
    def is_active(self) -> bool:
        return self.state in (SessionState.CONNECTING, SessionState.CONNECTED)


@dataclass
class VoiceServerCredentials:
    """バックエンドのjoinエンドポイントが返すボイスサーバー情報"""
    token: str
    endpoint: str
    session_id: str
    user_id: str
    guild_id: str

    @classmethod
    def from_payload(cls, payload: Dict[str, Any],
                     fallback_guild_id: Optional[str] = None) -> 'VoiceServerCredentials':
        """joinレスポンスから作成（必須項目がなければCredentialError）"""
        if not isinstance(payload, dict):
            raise CredentialError("ボイスサーバー情報の形式が不正です")

        endpoint = payload.get("endpoint")
        if not endpoint:
            raise CredentialError("No voice endpoint received")

        missing = [key for key in ("token", "session_id") if not payload.get(key)]
        if missing:
            raise CredentialError(f"ボイスサーバー情報が不足しています: {', '.join(missing)}")

        return cls(
            token=str(payload["token"]),
            endpoint=str(endpoint),
            session_id=str(payload["session_id"]),
            user_id=str(payload.get("user_id") or ""),
            guild_id=str(payload.get("guild_id") or fallback_guild_id or ""),
        )

    def gateway_url(self, version: int = Config.GATEWAY_VERSION) -> str:
        """Voice GatewayのWebSocket URL"""
        endpoint = self.endpoint
        if "://" in endpoint:
            endpoint = endpoint.split("://", 1)[1]
        endpoint = endpoint.rstrip("/")
        # endpointのポートはWSSのポートなので残す（:80だけ除去）
        if endpoint.endswith(":80"):
            endpoint = endpoint[:-3]
        return f"wss://{endpoint}/?v={version}&encoding=json"


@dataclass
class ControlMessage:
    """コントロールチャンネルの1メッセージ {op, d}"""
    op: int
    d: Any = None

    def to_json(self) -> str:
        return json.dumps({"op": int(self.op), "d": self.d})

    @classmethod
    def from_json(cls, raw: Any) -> 'ControlMessage':
        if isinstance(raw, (bytes, bytearray)):
            raw = raw.decode("utf-8", errors="replace")
        try:
            payload = json.loads(raw)
        except (TypeError, ValueError) as e:
            raise ProtocolError(f"JSONとして解釈できないフレーム: {e}") from e

        if not isinstance(payload, dict) or not isinstance(payload.get("op"), int):
            raise ProtocolError(f"opを持たないフレーム: {str(raw)[:80]}")

        return cls(op=payload["op"], d=payload.get("d"))


@dataclass
class MediaReadyInfo:
    """Ready (op 2) の内容。ssrcはこれ以降のSDPで正となる"""
    ssrc: int
    ip: str = ""
    port: int = 0
    modes: List[str] = field(default_factory=list)

    @classmethod
    def from_payload(cls, d: Optional[Dict[str, Any]]) -> 'MediaReadyInfo':
        if not isinstance(d, dict) or d.get("ssrc") is None:
            raise NegotiationError("ReadyにSSRCが含まれていません")
        try:
            ssrc = int(d["ssrc"])
            port = int(d.get("port") or 0)
        except (TypeError, ValueError) as e:
            raise NegotiationError(f"Readyの値が不正です: {e}") from e

        return cls(
            ssrc=ssrc,
            ip=str(d.get("ip") or ""),
            port=port,
            modes=list(d.get("modes") or []),
        )


@dataclass
class RemoteDescriptionInfo:
    """Gatewayの簡略SDPから取り出したトランスポート情報"""
    ip: str = "0.0.0.0"
    port: int = 0
    ice_ufrag: str = ""
    ice_pwd: str = ""
    fingerprint: str = ""
    candidates: List[str] = field(default_factory=list)


@dataclass
class LocalOfferFacts:
    """ローカルOfferから取り出す値（Answer組み立て用）"""
    mid: str = "0"
    opus_payload_type: int = 111
    opus_fmtp: str = "minptime=10;useinbandfec=1"
