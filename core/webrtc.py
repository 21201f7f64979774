"""
WebRTC Media Negotiator

aiortcでOfferを作り、Voice GatewayとのOffer/Answer交換を行う。
GatewayのAnswerは簡略SDPなので、ローカルOfferと合わせて組み立て直してから適用する
"""

import asyncio
import logging
import uuid
from typing import Any, Callable, Dict, Optional

from aiortc import (
    MediaStreamTrack,
    RTCConfiguration,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.rtcconfiguration import RTCBundlePolicy

from config import Config

from .audio import SilentAudioTrack
from .errors import NegotiationError
from .models import MediaReadyInfo, VoiceOpcode
from .sdp import build_answer, extract_local_offer_facts, parse_remote_description, rewrite_ssrc

logger = logging.getLogger("webrtc")


class MediaNegotiator:
    """WebRTCのOffer/Answer交換"""

    def __init__(self, channel, render_sink=None,
                 ice_servers: Optional[list] = None,
                 gather_timeout: float = Config.ICE_GATHER_TIMEOUT,
                 pc_factory: Optional[Callable[..., Any]] = None):
        self.channel = channel
        self.render_sink = render_sink
        self.ice_servers = Config.ICE_SERVERS if ice_servers is None else ice_servers
        self.gather_timeout = gather_timeout
        self._pc_factory = pc_factory or RTCPeerConnection

        self.pc: Optional[RTCPeerConnection] = None
        self.ssrc: Optional[int] = None
        self.local_sdp: Optional[str] = None
        self.placeholder_track: Optional[SilentAudioTrack] = None
        self.remote_applied = False
        self._gathering_complete: Optional[asyncio.Event] = None

    def _get_rtc_configuration(self) -> RTCConfiguration:
        """RTCConfiguration作成"""
        ice_servers = []
        for server in self.ice_servers:
            urls = server.get("urls")
            username = server.get("username")
            credential = server.get("credential")

            if username and credential:
                ice_servers.append(RTCIceServer(
                    urls=urls,
                    username=username,
                    credential=credential
                ))
            else:
                ice_servers.append(RTCIceServer(urls=urls))

        return RTCConfiguration(iceServers=ice_servers, bundlePolicy=RTCBundlePolicy.MAX_BUNDLE)

    def _create_peer_connection(self) -> None:
        """PeerConnection作成"""
        self._gathering_complete = asyncio.Event()
        pc = self._pc_factory(configuration=self._get_rtc_configuration())
        self.pc = pc

        @pc.on("icegatheringstatechange")
        async def on_ice_gathering_state():
            logger.info(f"ICE収集状態変更: {pc.iceGatheringState}")
            if pc.iceGatheringState == "complete" and self._gathering_complete:
                self._gathering_complete.set()

        @pc.on("iceconnectionstatechange")
        async def on_ice_connection_state():
            logger.info(f"ICE接続状態変更: {pc.iceConnectionState}")

        @pc.on("connectionstatechange")
        async def on_connection_state():
            logger.info(f"接続状態: {pc.connectionState}")

        @pc.on("track")
        def on_track(track: MediaStreamTrack):
            logger.info(f"リモートトラック受信: {track.kind}")
            if track.kind == "audio" and self.render_sink is not None:
                self.render_sink.attach(track)

    def _align_sender_ssrc(self, sender) -> None:
        # aiortcは送信SSRCをsender側に持ち、localDescriptionもそこから作り直す
        if hasattr(sender, "_ssrc"):
            sender._ssrc = self.ssrc
        else:
            logger.warning(f"送信SSRCを揃えられません（{type(sender).__name__}に_ssrcがない）: "
                           f"RTPはSDPと異なるSSRCで送られる可能性があります")

    async def start(self, ready: MediaReadyInfo, local_track: Optional[MediaStreamTrack] = None,
                    muted: bool = False) -> str:
        """Offer作成からSelect Protocol / Speaking送信まで

        戻り値はGatewayに送ったSDP
        """
        if ready is None or ready.ssrc is None:
            raise NegotiationError("SSRCが割り当てられる前にOfferは作れません")

        if self.pc is not None:
            await self.close()
        self.ssrc = ready.ssrc
        logger.info(f"割り当てSSRC: {self.ssrc}")

        try:
            self._create_peer_connection()

            track = local_track
            if track is None:
                # マイクなし: 無音トラックで音声セクションを確保
                self.placeholder_track = SilentAudioTrack()
                track = self.placeholder_track
                logger.info("マイクなしのため無音トラックを使用")
            sender = self.pc.addTrack(track)
            self._align_sender_ssrc(sender)

            offer = await self.pc.createOffer()
            sdp = rewrite_ssrc(offer.sdp, self.ssrc)
            await self.pc.setLocalDescription(RTCSessionDescription(sdp=sdp, type="offer"))

            gathered = await self.wait_for_ice_gathering()
            self.local_sdp = rewrite_ssrc(gathered, self.ssrc)
        except NegotiationError:
            raise
        except Exception as e:
            logger.error(f"Offer作成エラー: {e}")
            raise NegotiationError(f"Offer作成エラー: {e}") from e

        logger.info(f"Offer SDPのICE候補数: {self.local_sdp.count('a=candidate:')}")

        await self.channel.send(VoiceOpcode.SELECT_PROTOCOL, self._select_protocol_payload())
        await self.channel.send(VoiceOpcode.SPEAKING, {
            "speaking": 0 if muted else 1,
            "delay": 0,
            "ssrc": self.ssrc,
        })
        return self.local_sdp

    def _select_protocol_payload(self) -> Dict[str, Any]:
        return {
            "protocol": "webrtc",
            "data": self.local_sdp,
            "rtc_connection_id": str(uuid.uuid4()),
            "codecs": [
                {
                    "name": "opus",
                    "type": "audio",
                    "priority": Config.OPUS_PRIORITY,
                    "payload_type": Config.OPUS_PAYLOAD_TYPE,
                },
            ],
        }

    async def wait_for_ice_gathering(self) -> str:
        """ICE収集完了かタイムアウトまで待ち、その時点のローカルSDPを返す"""
        if self.pc is None:
            raise NegotiationError("No peer connection")

        if self.pc.iceGatheringState != "complete":
            try:
                await asyncio.wait_for(self._gathering_complete.wait(), timeout=self.gather_timeout)
            except asyncio.TimeoutError:
                logger.warning(f"ICE収集タイムアウト: {self.pc.iceGatheringState}, "
                               f"{self.gather_timeout}秒で打ち切り")

        local_desc = self.pc.localDescription
        if local_desc is None:
            raise NegotiationError("ローカルSDPがありません")
        return local_desc.sdp

    async def apply_session_description(self, d: Optional[Dict[str, Any]]) -> bool:
        """Session Description (op 4) からAnswerを組み立てて適用

        SDPがなければ適用せずFalse（メディアなしの縮退モード）
        """
        if self.pc is None:
            raise NegotiationError("No peer connection")

        remote_sdp = d.get("sdp") if isinstance(d, dict) else None
        if not remote_sdp:
            logger.warning(f"Session DescriptionにSDPがありません（メディアなしで接続）: {d}")
            return False

        logger.debug(f"GatewayのSDP:\n{remote_sdp}")
        try:
            remote = parse_remote_description(remote_sdp)
            local = extract_local_offer_facts(self.local_sdp or self.pc.localDescription.sdp)
            answer = build_answer(remote, local)
            logger.debug(f"組み立てたAnswer SDP:\n{answer}")
            await self.pc.setRemoteDescription(RTCSessionDescription(sdp=answer, type="answer"))
        except NegotiationError:
            raise
        except Exception as e:
            logger.error(f"Answer処理エラー: {e}")
            raise NegotiationError(f"Answer処理エラー: {e}") from e

        self.remote_applied = True
        logger.info("リモートSDP適用完了")
        return True

    async def close(self) -> None:
        """PeerConnectionを閉じる（何度呼んでもよい）"""
        if self.placeholder_track is not None:
            self.placeholder_track.stop()
            self.placeholder_track = None

        pc = self.pc
        self.pc = None
        if pc is not None:
            try:
                await pc.close()
            except Exception as e:
                logger.debug(f"PeerConnectionクローズエラー: {e}")
            logger.info("PeerConnection終了")

        self.ssrc = None
        self.local_sdp = None
        self.remote_applied = False
        self._gathering_complete = None
