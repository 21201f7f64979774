"""
バックエンドのボイスAPIクライアント

join: バックエンドがメインGatewayでVoice State Updateを送り、
      ボイスサーバー情報 (token, endpoint, session_id, user_id) を返す
leave: ボイスチャンネルからの退出をバックエンドに依頼（ベストエフォート）
"""

import logging
from typing import Any, Dict, Optional

import requests

from config import Config

from .errors import CredentialError
from .models import VoiceServerCredentials

logger = logging.getLogger("backend")


class VoiceBackendClient:
    """join/leave エンドポイント"""

    def __init__(self, base_url: Optional[str] = None, token: Optional[str] = None,
                 session: Optional[requests.Session] = None):
        self.base_url = (base_url or Config.API_BASE_URL).rstrip("/")
        self.token = token if token is not None else Config.get_api_token()
        self.http = session or requests.Session()

    def _headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.token}",
        }

    def _post(self, path: str, body: Dict[str, Any]) -> requests.Response:
        url = f"{self.base_url}{path}"
        return self.http.post(url, json=body, headers=self._headers(), timeout=Config.API_TIMEOUT)

    def fetch_voice_credentials(self, guild_id: str, channel_id: str) -> VoiceServerCredentials:
        """ボイスサーバー情報を取得"""
        try:
            response = self._post("/api/discord/voice/join", {
                "guild_id": guild_id,
                "channel_id": channel_id,
            })
        except requests.RequestException as e:
            raise CredentialError(f"joinリクエスト失敗: {e}") from e

        if not response.ok:
            try:
                message = response.json().get("error")
            except ValueError:
                message = None
            raise CredentialError(message or f"HTTP {response.status_code}")

        try:
            payload = response.json()
        except ValueError as e:
            raise CredentialError("joinレスポンスがJSONではありません") from e

        logger.info(f"ボイスサーバー情報取得: endpoint={payload.get('endpoint') if isinstance(payload, dict) else None}")
        return VoiceServerCredentials.from_payload(payload, fallback_guild_id=guild_id)

    def release_voice_credentials(self, guild_id: str) -> bool:
        """退出を通知（失敗してもエラーにしない）"""
        try:
            response = self._post("/api/discord/voice/leave", {"guild_id": guild_id})
        except requests.RequestException as e:
            logger.warning(f"leaveリクエスト失敗: {e}")
            return False

        if not response.ok:
            logger.warning(f"leaveリクエスト失敗: HTTP {response.status_code}")
            return False
        return True
