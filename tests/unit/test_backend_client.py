"""Unit tests for the backend voice API client."""

from unittest.mock import MagicMock

import pytest
import requests

from core.backend_client import VoiceBackendClient
from core.errors import CredentialError


def make_response(status: int = 200, payload=None, json_error: bool = False) -> MagicMock:
    response = MagicMock()
    response.status_code = status
    response.ok = 200 <= status < 400
    if json_error:
        response.json.side_effect = ValueError("no json")
    else:
        response.json.return_value = payload
    return response


@pytest.fixture
def http() -> MagicMock:
    return MagicMock(spec=requests.Session)


@pytest.fixture
def client(http: MagicMock) -> VoiceBackendClient:
    return VoiceBackendClient(base_url="https://api.example/", token="secret", session=http)


class TestFetchVoiceCredentials:
    """Test the join request."""

    def test_returns_credentials(self, client: VoiceBackendClient, http: MagicMock) -> None:
        http.post.return_value = make_response(payload={
            "token": "voice-token",
            "endpoint": "c-ams-1.voice.example:443",
            "session_id": "session-1",
            "user_id": "42",
        })

        creds = client.fetch_voice_credentials("1000", "2000")

        assert creds.token == "voice-token"
        assert creds.guild_id == "1000"
        args, kwargs = http.post.call_args
        assert args[0] == "https://api.example/api/discord/voice/join"
        assert kwargs["json"] == {"guild_id": "1000", "channel_id": "2000"}
        assert kwargs["headers"]["Authorization"] == "Bearer secret"

    def test_error_message_from_body(self, client: VoiceBackendClient, http: MagicMock) -> None:
        http.post.return_value = make_response(403, {"error": "Not in guild"})

        with pytest.raises(CredentialError, match="Not in guild"):
            client.fetch_voice_credentials("1000", "2000")

    def test_error_status_without_body(self, client: VoiceBackendClient, http: MagicMock) -> None:
        http.post.return_value = make_response(502, json_error=True)

        with pytest.raises(CredentialError, match="HTTP 502"):
            client.fetch_voice_credentials("1000", "2000")

    def test_request_failure(self, client: VoiceBackendClient, http: MagicMock) -> None:
        http.post.side_effect = requests.ConnectionError("refused")

        with pytest.raises(CredentialError):
            client.fetch_voice_credentials("1000", "2000")

    def test_missing_endpoint(self, client: VoiceBackendClient, http: MagicMock) -> None:
        http.post.return_value = make_response(payload={
            "token": "voice-token", "endpoint": None, "session_id": "session-1",
        })

        with pytest.raises(CredentialError, match="No voice endpoint"):
            client.fetch_voice_credentials("1000", "2000")


class TestReleaseVoiceCredentials:
    """Test the best-effort leave request."""

    def test_success(self, client: VoiceBackendClient, http: MagicMock) -> None:
        http.post.return_value = make_response(payload={"ok": True})

        assert client.release_voice_credentials("1000") is True
        assert http.post.call_args.args[0] == "https://api.example/api/discord/voice/leave"
        assert http.post.call_args.kwargs["json"] == {"guild_id": "1000"}

    def test_failures_return_false(self, client: VoiceBackendClient, http: MagicMock) -> None:
        http.post.return_value = make_response(500, json_error=True)
        assert client.release_voice_credentials("1000") is False

        http.post.side_effect = requests.Timeout("slow")
        assert client.release_voice_credentials("1000") is False


def test_missing_token(monkeypatch) -> None:
    monkeypatch.delenv("VOICE_API_TOKEN", raising=False)
    with pytest.raises(ValueError):
        VoiceBackendClient(base_url="https://api.example", session=MagicMock())
