#!/usr/bin/env python3
"""
voice-gateway-client - Voice Gatewayに WebRTC で参加するクライアント

使い方:
    python main.py <guild_id> <channel_id> [--mute] [--deaf]

Ctrl+C で退出する
"""

import os
import sys
import signal
import asyncio
import argparse
import logging
from logging.handlers import RotatingFileHandler

from config import Config
from core import (
    SessionCoordinator,
    SpeakingChanged,
    StateChanged,
    VoiceBackendClient,
    VoiceError,
    VoiceErrorEvent,
)

# systemdで実行時にprint出力をリアルタイムで表示
sys.stdout.reconfigure(line_buffering=True)
sys.stderr.reconfigure(line_buffering=True)

LOGGER_NAMES = ("voice_gateway", "webrtc", "session", "audio", "backend")

logger = logging.getLogger("session")

# グローバル状態
running = True


def setup_logging(level: int = logging.INFO) -> None:
    """ログ設定（ファイル + コンソール）"""
    os.makedirs(Config.LOG_DIR, exist_ok=True)

    file_handler = RotatingFileHandler(
        os.path.join(Config.LOG_DIR, "voice.log"),
        maxBytes=10*1024*1024,
        backupCount=5,
        encoding='utf-8'
    )
    file_handler.setFormatter(logging.Formatter(
        '%(asctime)s | %(name)s | %(message)s', datefmt='%Y-%m-%d %H:%M:%S'
    ))

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(logging.Formatter(
        '%(asctime)s | %(message)s', datefmt='%H:%M:%S'
    ))

    for name in LOGGER_NAMES:
        named = logging.getLogger(name)
        named.setLevel(level)
        named.addHandler(file_handler)
        named.addHandler(console_handler)

    # aiortc/aioiceは警告以上のみ
    logging.getLogger("aioice").setLevel(logging.WARNING)
    logging.getLogger("aiortc").setLevel(logging.WARNING)


def signal_handler(sig, frame):
    """終了シグナルハンドラ"""
    global running
    running = False


def on_voice_event(event) -> None:
    """イベントをコンソールに表示"""
    if isinstance(event, StateChanged):
        print(f"状態: {event.state.value}")
    elif isinstance(event, SpeakingChanged):
        logger.debug(f"発話: user={event.user_id}, ssrc={event.ssrc}, speaking={event.speaking}")
    elif isinstance(event, VoiceErrorEvent):
        print(f"エラー: {event.message}")


async def main_async(args: argparse.Namespace) -> int:
    """参加して、終了シグナルまで待つ"""
    backend = VoiceBackendClient()
    coordinator = SessionCoordinator(backend)
    coordinator.subscribe(on_voice_event)

    # joinにはタイムアウトがないので、終了シグナルで中断できるようにする
    join_task = asyncio.create_task(coordinator.join(args.guild_id, args.channel_id))
    while not join_task.done():
        if not running:
            await coordinator.leave()
            break
        await asyncio.sleep(0.2)

    try:
        session = await join_task
    except VoiceError as e:
        print(f"参加できませんでした: {e}")
        return 1

    if not coordinator.is_connected:
        return 1
    if not session.media_connected:
        print("メディアなしで接続しました（音声は流れません）")

    if args.mute and not coordinator.muted:
        coordinator.toggle_mute()
    if args.deaf and not coordinator.deafened:
        coordinator.toggle_deafen()

    try:
        while running and coordinator.is_connected:
            await asyncio.sleep(0.2)
    finally:
        await coordinator.leave()

    return 0


def main():
    """エントリーポイント"""
    parser = argparse.ArgumentParser(description="Voice Gateway client (WebRTC)")
    parser.add_argument("guild_id")
    parser.add_argument("channel_id")
    parser.add_argument("--mute", action="store_true", help="ミュートで参加")
    parser.add_argument("--deaf", action="store_true", help="聴覚オフで参加")
    parser.add_argument("--debug", action="store_true", help="デバッグログ")
    args = parser.parse_args()

    setup_logging(logging.DEBUG if args.debug else logging.INFO)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    # トークン確認
    try:
        Config.get_api_token()
    except ValueError as e:
        print(f"エラー: {e}")
        sys.exit(1)

    exit_code = asyncio.run(main_async(args))
    print("終了しました")
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
