"""
オーディオデバイス

マイク入力トラック、無音プレースホルダートラック、リモート音声の再生
"""

import asyncio
import logging
from fractions import Fraction
from typing import Dict, Optional

import numpy as np
from aiortc import MediaStreamTrack
from aiortc.mediastreams import MediaStreamError
from av import AudioFrame

from config import Config

from .errors import DeviceError

logger = logging.getLogger("audio")

FRAME_DURATION = Config.SAMPLES_PER_FRAME / Config.SAMPLE_RATE


def find_audio_device(p, device_type: str = "input") -> Optional[int]:
    """オーディオデバイスを自動検出"""
    input_target_names = ["usbmic", "USB PnP Sound", "USB Audio", "USB PnP Audio"]
    output_target_names = ["usbspk", "UACDemo", "USB Audio", "USB PnP Audio"]
    target_names = input_target_names if device_type == "input" else output_target_names
    channel_key = "maxInputChannels" if device_type == "input" else "maxOutputChannels"

    candidates = []
    for i in range(p.get_device_count()):
        info = p.get_device_info_by_index(i)
        if info.get(channel_key, 0) > 0:
            candidates.append((i, info.get("name", "")))

    # USBデバイスを優先
    for i, name in candidates:
        if any(target in name for target in target_names):
            return i

    # フォールバック
    return candidates[0][0] if candidates else None


def _make_frame(pcm: bytes, pts: int) -> AudioFrame:
    frame = AudioFrame(format="s16", layout="mono", samples=len(pcm) // 2)
    frame.planes[0].update(pcm)
    frame.sample_rate = Config.SAMPLE_RATE
    frame.pts = pts
    frame.time_base = Fraction(1, Config.SAMPLE_RATE)
    return frame


SILENCE = bytes(Config.SAMPLES_PER_FRAME * 2)


class SilentAudioTrack(MediaStreamTrack):
    """無音トラック（マイクがなくてもOfferに音声セクションを出すため）"""

    kind = "audio"

    def __init__(self):
        super().__init__()
        self.enabled = False
        self._pts = 0

    async def recv(self) -> AudioFrame:
        if self.readyState != "live":
            raise MediaStreamError
        await asyncio.sleep(FRAME_DURATION)
        frame = _make_frame(SILENCE, self._pts)
        self._pts += Config.SAMPLES_PER_FRAME
        return frame


class MicrophoneTrack(MediaStreamTrack):
    """USBマイクからのオーディオトラック

    enabled が False の間は無音を送る（ミュート）
    """

    kind = "audio"

    def __init__(self, device_index: Optional[int] = None):
        super().__init__()
        self.enabled = True
        self.device_index = device_index
        self._audio = None
        self._stream = None
        self._pts = 0

    @property
    def is_running(self) -> bool:
        return self._stream is not None

    async def start(self) -> None:
        """マイク開始（開けなければDeviceError）"""
        if self._stream is not None:
            return

        try:
            import pyaudio
        except ImportError as e:
            raise DeviceError("pyaudioがインストールされていません") from e

        try:
            self._audio = pyaudio.PyAudio()
            device_index = self.device_index
            if device_index is None:
                device_index = find_audio_device(self._audio, "input")
            if device_index is None:
                raise DeviceError("マイクが見つかりません")

            self._stream = self._audio.open(
                format=pyaudio.paInt16,
                channels=Config.CHANNELS,
                rate=Config.SAMPLE_RATE,
                input=True,
                input_device_index=device_index,
                frames_per_buffer=Config.SAMPLES_PER_FRAME
            )
            logger.info(f"マイクストリーム開始: device={device_index}")
        except DeviceError:
            self._release()
            raise
        except (OSError, ValueError) as e:
            self._release()
            raise DeviceError(f"マイク起動エラー: {e}") from e

    def _release(self) -> None:
        if self._stream:
            try:
                self._stream.stop_stream()
                self._stream.close()
            except OSError:
                pass
            self._stream = None
        if self._audio:
            self._audio.terminate()
            self._audio = None

    def stop(self) -> None:
        """マイク停止（トラックも終了する）"""
        was_running = self._stream is not None
        self._release()
        super().stop()
        if was_running:
            logger.info("マイクストリーム停止")

    async def recv(self) -> AudioFrame:
        """オーディオフレーム取得"""
        if self.readyState != "live":
            raise MediaStreamError

        if self._stream is None:
            await asyncio.sleep(FRAME_DURATION)
            pcm = SILENCE
        else:
            loop = asyncio.get_event_loop()
            try:
                pcm = await loop.run_in_executor(
                    None,
                    lambda: self._stream.read(Config.SAMPLES_PER_FRAME, exception_on_overflow=False)
                )
            except (OSError, AttributeError) as e:
                # 読み取り中に停止された場合など
                logger.debug(f"オーディオ読み取りエラー: {e}")
                pcm = SILENCE

        if not self.enabled:
            pcm = bytes(len(pcm))

        frame = _make_frame(pcm, self._pts)
        self._pts += len(pcm) // 2
        return frame


async def acquire_capture_track(device_index: Optional[int] = None) -> MicrophoneTrack:
    """マイクを取得（拒否・不在ならDeviceError）"""
    track = MicrophoneTrack(device_index if device_index is not None
                            else Config.get_device_index("input"))
    await track.start()
    return track


class RemoteAudioPlayer:
    """リモート音声の再生先

    attach() されたトラックごとに再生タスクを動かす。
    muted の間はフレームを読み捨てる（聴覚オフ）
    """

    def __init__(self, device_index: Optional[int] = None):
        self.device_index = device_index
        self.muted = False
        self._tasks: Dict[str, asyncio.Task] = {}

    @property
    def track_count(self) -> int:
        return len(self._tasks)

    def set_muted(self, muted: bool) -> None:
        self.muted = muted

    def attach(self, track: MediaStreamTrack) -> None:
        """リモートトラックを再生開始"""
        if track.id in self._tasks:
            return
        self._tasks[track.id] = asyncio.create_task(self._play(track))
        logger.info(f"リモート音声再生開始: track={track.id}")

    async def close(self) -> None:
        """すべての再生を停止"""
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def _open_output(self):
        try:
            import pyaudio
        except ImportError:
            logger.warning("pyaudioがないためリモート音声は再生しません")
            return None, None

        try:
            audio = pyaudio.PyAudio()
            device_index = self.device_index
            if device_index is None:
                device_index = Config.get_device_index("output")
            if device_index is None:
                device_index = find_audio_device(audio, "output")
            stream = audio.open(
                format=pyaudio.paInt16,
                channels=Config.CHANNELS,
                rate=Config.SAMPLE_RATE,
                output=True,
                output_device_index=device_index,
                frames_per_buffer=Config.SAMPLES_PER_FRAME
            )
            return audio, stream
        except OSError as e:
            logger.error(f"オーディオ出力エラー: {e}")
            return None, None

    async def _play(self, track: MediaStreamTrack) -> None:
        audio, stream = self._open_output()
        loop = asyncio.get_event_loop()
        try:
            while True:
                try:
                    frame = await track.recv()
                except MediaStreamError:
                    break

                if self.muted or stream is None:
                    continue

                samples = frame.to_ndarray()
                # ステレオで届いたらモノラルに落とす
                if samples.ndim == 2 and samples.shape[0] == 1 and frame.layout.name == "stereo":
                    samples = samples.reshape(-1, 2).mean(axis=1).astype(np.int16)
                await loop.run_in_executor(None, stream.write, samples.tobytes())
        finally:
            if stream is not None:
                try:
                    stream.stop_stream()
                    stream.close()
                except OSError:
                    pass
            if audio is not None:
                audio.terminate()
            self._tasks.pop(track.id, None)
            logger.info(f"リモート音声再生終了: track={track.id}")
