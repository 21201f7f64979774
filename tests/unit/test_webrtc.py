"""Unit tests for the WebRTC media negotiator.

A fake peer connection stands in for aiortc so the offer rewrite, the
bounded ICE gathering wait and the answer reconstruction can be checked
without network access.
"""

import asyncio
import logging
import time
from unittest.mock import AsyncMock

import pytest

from core.audio import SilentAudioTrack
from core.errors import NegotiationError
from core.models import MediaReadyInfo, VoiceOpcode
from core.webrtc import MediaNegotiator
from tests.helpers.fakes import (
    FakePeerConnection,
    FakeRenderSink,
    FakeTrack,
    REMOTE_SDP,
)

READY = MediaReadyInfo(ssrc=12345, ip="10.0.0.5", port=5000, modes=["xsalsa20_poly1305"])


class RecordingChannel:
    def __init__(self):
        self.sent = []

    async def send(self, op, d=None):
        self.sent.append((int(op), d))

    def payloads(self, op):
        return [d for sent_op, d in self.sent if sent_op == op]


def make_negotiator(channel=None, gathering_completes=True, gather_timeout=1.0, sink=None):
    pcs = []

    def factory(configuration=None):
        pc = FakePeerConnection(configuration=configuration, gathering_completes=gathering_completes)
        pcs.append(pc)
        return pc

    negotiator = MediaNegotiator(
        channel or RecordingChannel(),
        render_sink=sink,
        ice_servers=[{"urls": "stun:stun.example:3478"},
                     {"urls": "turn:turn.example:3478", "username": "u", "credential": "p"}],
        gather_timeout=gather_timeout,
        pc_factory=factory,
    )
    return negotiator, pcs


class TestOffer:
    """Test offer construction and the Select Protocol exchange."""

    @pytest.mark.asyncio
    async def test_start_sends_select_protocol_and_speaking(self) -> None:
        channel = RecordingChannel()
        negotiator, pcs = make_negotiator(channel)

        sdp = await negotiator.start(READY, FakeTrack("mic"), muted=False)

        assert [op for op, _ in channel.sent] == [VoiceOpcode.SELECT_PROTOCOL, VoiceOpcode.SPEAKING]
        select = channel.payloads(VoiceOpcode.SELECT_PROTOCOL)[0]
        assert select["protocol"] == "webrtc"
        assert select["data"] == sdp
        assert len(select["rtc_connection_id"]) == 36
        assert select["codecs"] == [{"name": "opus", "type": "audio", "priority": 1000, "payload_type": 120}]
        assert channel.payloads(VoiceOpcode.SPEAKING)[0] == {"speaking": 1, "delay": 0, "ssrc": 12345}

    @pytest.mark.asyncio
    async def test_offer_carries_assigned_ssrc_and_candidates(self) -> None:
        negotiator, pcs = make_negotiator()

        sdp = await negotiator.start(READY, FakeTrack("mic"))

        assert "a=ssrc:12345 cname:user@host" in sdp
        assert "a=ssrc:111" not in sdp
        assert "a=candidate:1 1 udp" in sdp
        assert "a=ssrc:12345" in pcs[0].localDescription.sdp
        assert pcs[0].senders[0]._ssrc == 12345

    @pytest.mark.asyncio
    async def test_sender_without_ssrc_field_is_reported(self, caplog) -> None:
        negotiator, pcs = make_negotiator()
        original_factory = negotiator._pc_factory

        class SenderWithoutSsrc:
            pass

        def factory(configuration=None):
            pc = original_factory(configuration=configuration)

            def add_track(track):
                pc.tracks.append(track)
                return SenderWithoutSsrc()

            pc.addTrack = add_track
            return pc

        negotiator._pc_factory = factory

        with caplog.at_level(logging.WARNING, logger="webrtc"):
            sdp = await negotiator.start(READY, FakeTrack("mic"))

        assert "a=ssrc:12345" in sdp
        assert any("_ssrc" in record.getMessage() for record in caplog.records)

    @pytest.mark.asyncio
    async def test_muted_speaking_flag(self) -> None:
        channel = RecordingChannel()
        negotiator, _ = make_negotiator(channel)

        await negotiator.start(READY, FakeTrack("mic"), muted=True)

        assert channel.payloads(VoiceOpcode.SPEAKING)[0]["speaking"] == 0

    @pytest.mark.asyncio
    async def test_silent_placeholder_without_capture_track(self) -> None:
        negotiator, pcs = make_negotiator()

        await negotiator.start(READY, None)

        track = pcs[0].tracks[0]
        assert isinstance(track, SilentAudioTrack)
        assert track.kind == "audio"
        assert track.enabled is False
        assert negotiator.placeholder_track is track

    @pytest.mark.asyncio
    async def test_ice_server_configuration(self) -> None:
        negotiator, pcs = make_negotiator()
        await negotiator.start(READY, FakeTrack("mic"))

        servers = pcs[0].configuration.iceServers
        assert [server.urls for server in servers] == ["stun:stun.example:3478", "turn:turn.example:3478"]
        assert servers[1].username == "u"

    @pytest.mark.asyncio
    async def test_no_select_protocol_without_ssrc(self) -> None:
        channel = RecordingChannel()
        negotiator, pcs = make_negotiator(channel)

        with pytest.raises(NegotiationError):
            await negotiator.start(None, FakeTrack("mic"))

        assert channel.sent == []
        assert pcs == []

    @pytest.mark.asyncio
    async def test_offer_failure_is_negotiation_error(self) -> None:
        channel = RecordingChannel()
        negotiator, pcs = make_negotiator(channel)

        async def broken_offer():
            raise RuntimeError("codec failure")

        original_factory = negotiator._pc_factory

        def factory(configuration=None):
            pc = original_factory(configuration=configuration)
            pc.createOffer = broken_offer
            return pc

        negotiator._pc_factory = factory

        with pytest.raises(NegotiationError, match="codec failure"):
            await negotiator.start(READY, FakeTrack("mic"))
        assert channel.sent == []


class TestIceGathering:
    """Test the bounded candidate-gathering wait."""

    @pytest.mark.asyncio
    async def test_wait_is_bounded_when_gathering_never_completes(self) -> None:
        channel = RecordingChannel()
        negotiator, pcs = make_negotiator(channel, gathering_completes=False, gather_timeout=0.1)

        started = time.monotonic()
        sdp = await negotiator.start(READY, FakeTrack("mic"))
        elapsed = time.monotonic() - started

        assert elapsed < 1.0
        # partial description still goes out
        assert "a=candidate" not in sdp
        assert "a=ssrc:12345" in sdp
        assert channel.payloads(VoiceOpcode.SELECT_PROTOCOL)

    @pytest.mark.asyncio
    async def test_returns_immediately_when_complete(self) -> None:
        negotiator, pcs = make_negotiator(gather_timeout=5.0)
        await negotiator.start(READY, FakeTrack("mic"))

        started = time.monotonic()
        await negotiator.wait_for_ice_gathering()
        assert time.monotonic() - started < 0.5

    @pytest.mark.asyncio
    async def test_wait_without_peer_connection(self) -> None:
        negotiator, _ = make_negotiator()
        with pytest.raises(NegotiationError):
            await negotiator.wait_for_ice_gathering()


class TestSessionDescription:
    """Test reconstruction and application of the gateway answer."""

    @pytest.mark.asyncio
    async def test_reconstructed_answer_applied(self) -> None:
        negotiator, pcs = make_negotiator()
        await negotiator.start(READY, FakeTrack("mic"))

        applied = await negotiator.apply_session_description({"sdp": REMOTE_SDP, "audio_codec": "opus"})

        assert applied is True
        assert negotiator.remote_applied
        remote = pcs[0].remoteDescription
        assert remote.type == "answer"
        lines = remote.sdp.split("\r\n")
        assert "m=audio 5000 UDP/TLS/RTP/SAVPF 96" in lines
        assert "c=IN IP4 10.0.0.5" in lines
        assert "a=ice-ufrag:abc" in lines
        assert "a=ice-pwd:xyz" in lines
        assert "a=fingerprint:sha-256 AA:BB" in lines
        assert "a=mid:0" in lines
        assert "a=candidate:1 1 UDP 4261412862 10.0.0.5 5000 typ host" in lines

    @pytest.mark.asyncio
    @pytest.mark.parametrize("payload", [{}, {"sdp": ""}, {"sdp": None, "mode": "x"}, None])
    async def test_missing_description_is_degraded(self, payload) -> None:
        negotiator, pcs = make_negotiator()
        await negotiator.start(READY, FakeTrack("mic"))

        applied = await negotiator.apply_session_description(payload)

        assert applied is False
        assert pcs[0].remoteDescription is None

    @pytest.mark.asyncio
    async def test_malformed_description_raises(self) -> None:
        negotiator, pcs = make_negotiator()
        await negotiator.start(READY, FakeTrack("mic"))

        with pytest.raises(NegotiationError):
            await negotiator.apply_session_description({"sdp": "m=audio 5000 ICE/SDP\n"})
        assert pcs[0].remoteDescription is None

    @pytest.mark.asyncio
    async def test_rejected_answer_raises(self) -> None:
        negotiator, pcs = make_negotiator()
        await negotiator.start(READY, FakeTrack("mic"))
        pcs[0].remote_error = ValueError("DTLS fingerprint mismatch")

        with pytest.raises(NegotiationError, match="fingerprint mismatch"):
            await negotiator.apply_session_description({"sdp": REMOTE_SDP})
        assert not negotiator.remote_applied

    @pytest.mark.asyncio
    async def test_description_before_offer_raises(self) -> None:
        negotiator, _ = make_negotiator()
        with pytest.raises(NegotiationError):
            await negotiator.apply_session_description({"sdp": REMOTE_SDP})


class TestRemoteTracksAndClose:
    """Test remote audio hand-off and teardown."""

    @pytest.mark.asyncio
    async def test_remote_audio_goes_to_render_sink(self) -> None:
        sink = FakeRenderSink()
        negotiator, pcs = make_negotiator(sink=sink)
        await negotiator.start(READY, FakeTrack("mic"))

        remote = FakeTrack("remote-audio")
        pcs[0].emit_track(remote)

        assert sink.attached == [remote]

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self) -> None:
        negotiator, pcs = make_negotiator()
        await negotiator.start(READY, None)
        placeholder = negotiator.placeholder_track

        await negotiator.close()
        await negotiator.close()

        assert pcs[0].closed
        assert placeholder.readyState == "ended"
        assert negotiator.pc is None
        assert negotiator.ssrc is None
        assert negotiator.local_sdp is None

    @pytest.mark.asyncio
    async def test_restart_closes_previous_connection(self) -> None:
        negotiator, pcs = make_negotiator(channel=AsyncMock())
        await negotiator.start(READY, FakeTrack("mic"))
        await negotiator.start(MediaReadyInfo(ssrc=999), FakeTrack("mic"))

        assert pcs[0].closed
        assert not pcs[1].closed
        assert negotiator.ssrc == 999
        await asyncio.sleep(0)
