"""
Voice Gateway コントロールチャンネル

WebSocket上で {op, d} 形式のJSONメッセージを交換する。
Hello/HeartbeatAck はここで処理し、すべてのメッセージを受信順にハンドラへ渡す
"""

import asyncio
import inspect
import logging
import math
from contextlib import suppress
from typing import Any, Awaitable, Callable, Optional

import websockets
from websockets.protocol import State

from config import Config

from .errors import ProtocolError, VoiceConnectionError
from .heartbeat import HeartbeatScheduler
from .models import ControlMessage, VoiceOpcode, VoiceServerCredentials

logger = logging.getLogger("voice_gateway")

MessageHandler = Callable[[ControlMessage], Awaitable[None]]
CloseHandler = Callable[[Optional[int], str], Any]
ErrorHandler = Callable[[Exception], Any]


class ControlChannel:
    """Voice GatewayのWebSocketクライアント"""

    def __init__(self, connector: Optional[Callable[..., Any]] = None):
        self.ws = None
        self.heartbeat = HeartbeatScheduler(self.send)
        self._connector = connector or websockets.connect
        self._receive_task: Optional[asyncio.Task] = None

        self._on_message: Optional[MessageHandler] = None
        self._on_close: Optional[CloseHandler] = None
        self._on_error: Optional[ErrorHandler] = None

    @property
    def is_open(self) -> bool:
        return self.ws is not None and self.ws.state is State.OPEN

    async def connect(self, url: str, on_message: MessageHandler,
                      on_close: Optional[CloseHandler] = None,
                      on_error: Optional[ErrorHandler] = None) -> None:
        """接続（失敗時はVoiceConnectionError、再試行しない）"""
        if self.ws is not None:
            await self.close()

        self._on_message = on_message
        self._on_close = on_close
        self._on_error = on_error

        logger.info(f"Voice Gateway接続: {url}")
        try:
            self.ws = await self._connector(url, open_timeout=Config.GATEWAY_OPEN_TIMEOUT)
        except (OSError, asyncio.TimeoutError, websockets.exceptions.WebSocketException) as e:
            self.ws = None
            logger.error(f"Voice Gateway接続エラー: {e}")
            raise VoiceConnectionError(f"Voice Gateway connection error: {e}") from e

        self._receive_task = asyncio.create_task(self._receive_loop(self.ws))
        logger.info("Voice Gateway接続完了")

    async def send(self, op: int, d: Any = None) -> None:
        """送信（未接続なら黙って捨てる）"""
        if not self.is_open:
            logger.debug(f"未接続のため送信破棄: op={int(op)}")
            return

        try:
            await self.ws.send(ControlMessage(op=op, d=d).to_json())
        except websockets.exceptions.ConnectionClosed as e:
            logger.warning(f"送信エラー（切断済み）: op={int(op)}, {e}")

    async def identify(self, credentials: VoiceServerCredentials) -> None:
        """Identify (op 0)"""
        await self.send(VoiceOpcode.IDENTIFY, {
            "server_id": credentials.guild_id,
            "user_id": credentials.user_id,
            "session_id": credentials.session_id,
            "token": credentials.token,
            "video": False,
            "streams": [],
        })

    async def close(self) -> None:
        """切断（何度呼んでもよい）。自分から閉じた場合はon_closeを呼ばない"""
        ws = self.ws
        task = self._receive_task
        self.ws = None
        self._receive_task = None
        self.heartbeat.stop()

        if ws is not None:
            try:
                await ws.close()
            except Exception as e:
                logger.debug(f"WebSocketクローズエラー: {e}")
            logger.info("Voice Gateway切断")

        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task

    @staticmethod
    def _heartbeat_interval(raw: Any) -> float:
        """Helloの間隔を検証（不正ならデフォルト値）"""
        try:
            interval = float(raw)
        except (TypeError, ValueError):
            interval = 0
        if not math.isfinite(interval) or interval <= 0:
            if raw is not None:
                logger.warning(f"不正なheartbeat_interval: {raw!r}, "
                               f"{Config.DEFAULT_HEARTBEAT_INTERVAL_MS}msを使用")
            return Config.DEFAULT_HEARTBEAT_INTERVAL_MS
        return interval

    def _handle_transport_op(self, message: ControlMessage) -> None:
        if message.op == VoiceOpcode.HELLO:
            d = message.d if isinstance(message.d, dict) else {}
            self.heartbeat.start(self._heartbeat_interval(d.get("heartbeat_interval")))
        elif message.op == VoiceOpcode.HEARTBEAT_ACK:
            self.heartbeat.ack(message.d)

    async def _receive_loop(self, ws) -> None:
        """メッセージ受信ループ（受信順に1件ずつ処理）"""
        try:
            async for raw in ws:
                try:
                    message = ControlMessage.from_json(raw)
                except ProtocolError as e:
                    logger.warning(f"不正なフレームを無視: {e}")
                    continue

                self._handle_transport_op(message)

                if self._on_message is None:
                    continue
                try:
                    await self._on_message(message)
                except Exception as e:
                    logger.error(f"メッセージ処理エラー: op={message.op}, {e}")
                    self._notify_error(e)

        except websockets.exceptions.ConnectionClosed as e:
            logger.warning(f"WebSocket接続が閉じられました: {e}")
        except Exception as e:
            logger.error(f"受信エラー: {e}")
            self._notify_error(e)
        finally:
            if ws is self.ws:
                # close()を経ずにループが終わった（相手側の切断か受信エラー）
                self.ws = None
                self._receive_task = None
                self.heartbeat.stop()
                if ws.state is State.OPEN:
                    # 受信エラーで抜けた場合はソケットがまだ開いている
                    try:
                        await ws.close()
                    except Exception as e:
                        logger.debug(f"WebSocketクローズエラー: {e}")
                code = getattr(ws, "close_code", None)
                reason = getattr(ws, "close_reason", None) or ""
                logger.info(f"Voice Gateway closed: code={code}, reason={reason or 'no reason'}")
                if self._on_close:
                    result = self._on_close(code, reason)
                    if inspect.isawaitable(result):
                        await result

    def _notify_error(self, error: Exception) -> None:
        if self._on_error:
            try:
                self._on_error(error)
            except Exception as e:
                logger.error(f"エラーハンドラ例外: {e}")
