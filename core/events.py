"""
ボイスセッションのイベント通知

リスナーは登録順に、イベントは発生順に同期的に呼ばれる
"""

import logging
from dataclasses import dataclass
from typing import Callable, List, Optional, Union

from .models import SessionState

logger = logging.getLogger("session")


@dataclass(frozen=True)
class StateChanged:
    """セッション状態の変化"""
    state: SessionState


@dataclass(frozen=True)
class SpeakingChanged:
    """他の参加者の発話状態 (op 5)"""
    user_id: Optional[str]
    ssrc: Optional[int]
    speaking: int


@dataclass(frozen=True)
class VoiceErrorEvent:
    """呼び出し側に見せるエラー"""
    message: str
    error: Optional[Exception] = None


VoiceEvent = Union[StateChanged, SpeakingChanged, VoiceErrorEvent]
Listener = Callable[[VoiceEvent], None]


class VoiceEventBus:
    """イベントの配信"""

    def __init__(self):
        self._listeners: List[Listener] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """リスナー登録。戻り値を呼ぶと解除"""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def emit(self, event: VoiceEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                # 1つのリスナーの失敗で他への配信を止めない
                logger.error(f"イベントリスナーエラー: {type(event).__name__}: {e}")
