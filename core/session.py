"""
ボイスセッション管理

join/leave/ミュート/聴覚オフの窓口。
セッション中のソケット・PeerConnection・マイクはすべてこのクラスが持つ

流れ:
  1. バックエンドのjoinでボイスサーバー情報を取得
  2. マイク取得（拒否されたら聴覚オフで続行）
  3. Voice Gatewayに接続してIdentify (op 0)
  4. Ready (op 2) → Offer作成、Select Protocol (op 1)
  5. Session Description (op 4) → Answer適用 → Connected
"""

import asyncio
import logging
from typing import Any, Callable, Optional

from .audio import RemoteAudioPlayer, acquire_capture_track
from .errors import (
    CredentialError,
    DeviceError,
    NegotiationError,
    VoiceConnectionError,
    VoiceError,
)
from .events import SpeakingChanged, StateChanged, VoiceErrorEvent, VoiceEventBus
from .models import ControlMessage, MediaReadyInfo, SessionState, VoiceOpcode, VoiceSession
from .voice_gateway import ControlChannel
from .webrtc import MediaNegotiator

logger = logging.getLogger("session")


class SessionCoordinator:
    """ボイスセッションのライフサイクル管理"""

    def __init__(self, backend,
                 channel_factory: Callable[[], ControlChannel] = ControlChannel,
                 negotiator_factory: Optional[Callable[..., MediaNegotiator]] = None,
                 capture: Callable[[], Any] = acquire_capture_track,
                 render_sink=None):
        self.backend = backend
        self.events = VoiceEventBus()
        self._channel_factory = channel_factory
        self._negotiator_factory = negotiator_factory or MediaNegotiator
        self._acquire_capture = capture
        self.render_sink = render_sink if render_sink is not None else RemoteAudioPlayer()

        self.session: Optional[VoiceSession] = None
        self.credentials = None
        self.channel: Optional[ControlChannel] = None
        self.negotiator: Optional[MediaNegotiator] = None
        self.local_track = None
        self.ssrc: Optional[int] = None
        self.muted = False
        self.deafened = False
        self._handshake: Optional[asyncio.Future] = None

    # ── 状態 ─────────────────────────────────────

    @property
    def state(self) -> SessionState:
        return self.session.state if self.session else SessionState.IDLE

    @property
    def is_connected(self) -> bool:
        return self.state is SessionState.CONNECTED

    @property
    def guild_id(self) -> Optional[str]:
        return self.session.guild_id if self.session and self.session.is_active else None

    @property
    def channel_id(self) -> Optional[str]:
        return self.session.channel_id if self.session and self.session.is_active else None

    def subscribe(self, listener):
        """イベントリスナー登録（解除関数を返す）"""
        return self.events.subscribe(listener)

    def _set_state(self, session: VoiceSession, state: SessionState) -> None:
        session.state = state
        logger.info(f"State: {state.value}")
        self.events.emit(StateChanged(state))

    def _emit_error(self, message: str, error: Optional[Exception] = None) -> None:
        logger.error(f"Error: {message}")
        self.events.emit(VoiceErrorEvent(message, error))

    def _is_current(self, session: VoiceSession) -> bool:
        return self.session is session and session.is_active

    # ── join / leave ─────────────────────────────

    async def join(self, guild_id: str, channel_id: str) -> VoiceSession:
        """ボイスチャンネルに参加（既存セッションがあれば先に退出）

        途中でleave()された場合は例外を出さずDisconnectedのセッションを返す
        """
        if (self.session and self.session.is_active) or self.channel is not None:
            await self.leave()

        session = VoiceSession(guild_id=guild_id, channel_id=channel_id)
        self.session = session
        loop = asyncio.get_event_loop()
        handshake = loop.create_future()
        self._handshake = handshake
        self._set_state(session, SessionState.CONNECTING)

        try:
            credentials = await loop.run_in_executor(
                None, self.backend.fetch_voice_credentials, guild_id, channel_id
            )
            if not self._is_current(session):
                return session
            if not credentials or not credentials.endpoint:
                raise CredentialError("No voice endpoint received")
            self.credentials = credentials

            await self._acquire_local_track(session)
            if not self._is_current(session):
                return session

            channel = self._channel_factory()
            self.channel = channel
            self.negotiator = self._negotiator_factory(channel, render_sink=self.render_sink)

            await channel.connect(
                credentials.gateway_url(),
                self._handle_message,
                on_close=self._handle_close,
                on_error=self._handle_channel_error,
            )
            if not self._is_current(session):
                await channel.close()
                return session

            logger.info("Voice Gateway接続完了、Identify送信")
            await channel.identify(credentials)

            # Ready + Session Description が終わるまで待つ（タイムアウトなし）
            await handshake

        except VoiceError as e:
            if not self._is_current(session):
                return session
            self._emit_error(str(e) or "Failed to join voice", e)
            await self._cleanup()
            self._set_state(session, SessionState.DISCONNECTED)
            raise
        except asyncio.CancelledError:
            if self._is_current(session):
                await self._cleanup()
                self._set_state(session, SessionState.DISCONNECTED)
            raise

        return session

    async def leave(self) -> None:
        """退出。どの状態から呼んでも最後はDisconnected"""
        session = self.session
        if session is not None and session.is_active:
            # 進行中のjoinにはここで中断が伝わる
            session.state = SessionState.DISCONNECTED
            loop = asyncio.get_event_loop()
            try:
                await loop.run_in_executor(None, self.backend.release_voice_credentials, session.guild_id)
            except Exception as e:
                logger.warning(f"Leave request failed: {e}")

        await self._cleanup()
        if session is not None:
            self._set_state(session, SessionState.DISCONNECTED)
        else:
            self.events.emit(StateChanged(SessionState.DISCONNECTED))

    async def _acquire_local_track(self, session: VoiceSession) -> None:
        try:
            track = await self._acquire_capture()
        except DeviceError as e:
            logger.warning(f"Microphone access denied, joining deaf: {e}")
            self.deafened = True
            self.render_sink.set_muted(True)
            return

        if not self._is_current(session):
            track.stop()
            return
        self.local_track = track
        self._apply_track_state()

    async def _cleanup(self) -> None:
        """ソケット・PeerConnection・マイクをまとめて解放"""
        handshake = self._handshake
        self._handshake = None
        if handshake is not None and not handshake.done():
            handshake.set_result(None)

        channel, negotiator, track = self.channel, self.negotiator, self.local_track
        self.channel = None
        self.negotiator = None
        self.local_track = None

        if channel is not None:
            await channel.close()
        if negotiator is not None:
            await negotiator.close()
        if track is not None:
            try:
                track.stop()
            except Exception as e:
                logger.warning(f"マイク停止エラー: {e}")
        await self.render_sink.close()

        self.credentials = None
        self.ssrc = None
        self.muted = False
        self.deafened = False
        self.render_sink.set_muted(False)

    # ── ミュート / 聴覚オフ ─────────────────────

    def _apply_track_state(self) -> None:
        if self.local_track is not None:
            self.local_track.enabled = not self.muted and not self.deafened

    def toggle_mute(self) -> bool:
        """マイクのミュート切り替え（受信には影響しない）"""
        self.muted = not self.muted
        self._apply_track_state()
        logger.info(f"ミュート: {self.muted}")
        return self.muted

    def toggle_deafen(self) -> bool:
        """聴覚オフ切り替え（送信も止める）"""
        self.deafened = not self.deafened
        self._apply_track_state()
        self.render_sink.set_muted(self.deafened)
        logger.info(f"聴覚オフ: {self.deafened}")
        return self.deafened

    # ── Voice Gatewayイベント ───────────────────

    def _handshake_pending(self) -> bool:
        return self._handshake is not None and not self._handshake.done()

    def _fail_handshake(self, error: VoiceError) -> None:
        if self._handshake_pending():
            self._handshake.set_exception(error)
        else:
            self._emit_error(str(error), error)

    async def _handle_message(self, message: ControlMessage) -> None:
        op, d = message.op, message.d
        if self.session is None or not self.session.is_active:
            logger.debug(f"セッション終了後のメッセージを無視: op={op}")
            return

        if op == VoiceOpcode.READY:
            await self._on_ready(d)
        elif op == VoiceOpcode.SESSION_DESCRIPTION:
            await self._on_session_description(d)
        elif op == VoiceOpcode.SPEAKING:
            d = d if isinstance(d, dict) else {}
            self.events.emit(SpeakingChanged(d.get("user_id"), d.get("ssrc"), d.get("speaking", 0)))
        elif op in (VoiceOpcode.HELLO, VoiceOpcode.HEARTBEAT_ACK):
            pass
        elif op == VoiceOpcode.RESUMED:
            logger.info("Resumed")
        elif op == VoiceOpcode.CLIENT_DISCONNECT:
            logger.info(f"Client disconnected: {d}")
        else:
            logger.warning(f"Unhandled voice op: {op} {d}")

    async def _on_ready(self, d: Any) -> None:
        logger.info(f"Voice Ready: {d}")
        try:
            ready = MediaReadyInfo.from_payload(d)
            self.ssrc = ready.ssrc
            await self.negotiator.start(ready, self.local_track, muted=self.muted)
        except VoiceError as e:
            self._fail_handshake(e)

    async def _on_session_description(self, d: Any) -> None:
        session = self.session
        try:
            media_connected = await self.negotiator.apply_session_description(d)
        except NegotiationError as e:
            self._fail_handshake(e)
            return

        if session.state is SessionState.CONNECTING:
            session.media_connected = media_connected
            self._set_state(session, SessionState.CONNECTED)
            if self._handshake_pending():
                self._handshake.set_result(None)

    def _handle_channel_error(self, error: Exception) -> None:
        if self._handshake_pending():
            if not isinstance(error, VoiceError):
                error = VoiceConnectionError(f"Voice Gateway connection error: {error}")
            self._handshake.set_exception(error)
        else:
            self._emit_error(f"Voice Gateway error: {error}", error)

    async def _handle_close(self, code: Optional[int], reason: str) -> None:
        session = self.session
        if self._handshake_pending():
            self._handshake.set_exception(VoiceConnectionError(
                f"Voice Gateway closed (code {code}: {reason or 'no reason'})", code
            ))
            return

        if session is not None and session.state is SessionState.CONNECTED:
            await self._cleanup()
            self._set_state(session, SessionState.DISCONNECTED)
