"""
Voice Gatewayのハートビート

開始直後に1回、その後はHelloで通知された間隔で op 3 を送る
"""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Optional

from .models import VoiceOpcode

logger = logging.getLogger("voice_gateway")

SendFunc = Callable[[int, Any], Awaitable[None]]


class HeartbeatScheduler:
    """ハートビート送信スケジューラ"""

    def __init__(self, send: SendFunc):
        self._send = send
        self._task: Optional[asyncio.Task] = None
        self._interval_ms: Optional[float] = None
        self.last_nonce: int = 0
        self.last_ack_nonce: Optional[int] = None
        self.sent_count = 0

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def interval_ms(self) -> Optional[float]:
        return self._interval_ms

    def start(self, interval_ms: float) -> None:
        """ハートビート開始（動作中なら作り直す）"""
        self.stop()
        self._interval_ms = interval_ms
        self._task = asyncio.create_task(self._run(interval_ms / 1000.0))
        logger.info(f"ハートビート開始: 間隔={interval_ms}ms")

    def stop(self) -> None:
        """ハートビート停止（何度呼んでもよい）"""
        if self._task is None:
            return
        if not self._task.done():
            self._task.cancel()
        self._task = None
        logger.debug("ハートビート停止")

    def ack(self, nonce: Any = None) -> None:
        """HeartbeatAck受信（検証はしない）"""
        if isinstance(nonce, int):
            self.last_ack_nonce = nonce
        logger.debug(f"ハートビートACK: nonce={nonce}")

    def _next_nonce(self) -> int:
        # 時計が戻っても減らない
        self.last_nonce = max(self.last_nonce, int(time.time() * 1000))
        return self.last_nonce

    async def _run(self, interval: float) -> None:
        while True:
            await self._send(VoiceOpcode.HEARTBEAT, self._next_nonce())
            self.sent_count += 1
            await asyncio.sleep(interval)
