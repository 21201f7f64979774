"""
SDPユーティリティ

Gatewayが返す簡略SDPは正規のWebRTC Answerではないため、
その内容とローカルOfferの値から完全なAnswerを組み立てる
"""

import logging
from typing import Iterator, List, Optional, Tuple

from .errors import NegotiationError
from .models import LocalOfferFacts, RemoteDescriptionInfo

logger = logging.getLogger("webrtc")

OPUS_RTPMAP = "opus/48000/2"
RTP_PROFILE = "UDP/TLS/RTP/SAVPF"


def parse_lines(sdp: str) -> Iterator[Tuple[str, str]]:
    """SDPを (種別, 値) に分解

    例: "a=mid:0" -> ("a", "mid:0")
    """
    for line in sdp.splitlines():
        line = line.strip()
        if len(line) < 2 or line[1] != "=":
            continue
        yield line[0], line[2:]


def parse_attribute(value: str) -> Tuple[str, Optional[str]]:
    """a= の値を (属性名, 値) に分解。値なし属性は None"""
    name, sep, rest = value.partition(":")
    return name, (rest if sep else None)


def find_attributes(sdp: str, name: str) -> List[str]:
    """指定属性の値をすべて取得"""
    values = []
    for kind, value in parse_lines(sdp):
        if kind != "a":
            continue
        attr, attr_value = parse_attribute(value)
        if attr == name and attr_value is not None:
            values.append(attr_value)
    return values


def rewrite_ssrc(sdp: str, ssrc: int) -> str:
    """すべての a=ssrc: 行のIDを割り当てられたSSRCに置き換える

    行の残り（cname:... など）と改行コードはそのまま。
    同じ値で何度適用しても結果は変わらない
    """
    target = f"a=ssrc:{ssrc}"
    lines = sdp.split("\n")
    for i, line in enumerate(lines):
        if not line.startswith("a=ssrc:"):
            continue
        head, sep, rest = line.partition(" ")
        if not sep and head.endswith("\r"):
            lines[i] = target + "\r"
        else:
            lines[i] = target + sep + rest
    return "\n".join(lines)


def _parse_port(value: str) -> int:
    parts = value.split()
    if len(parts) < 2:
        return 0
    try:
        return int(parts[1])
    except ValueError:
        return 0


def parse_remote_description(sdp: str) -> RemoteDescriptionInfo:
    """Gatewayの簡略SDPからトランスポート情報を取り出す

    例:
        m=audio 19333 ICE/SDP
        c=IN IP4 10.0.0.5
        a=ice-ufrag:abc
        a=ice-pwd:xyz
        a=fingerprint:sha-256 AA:BB
        a=candidate:1 1 UDP 4261412862 10.0.0.5 19333 typ host
    """
    info = RemoteDescriptionInfo()

    for kind, value in parse_lines(sdp):
        if kind == "c" and value.startswith("IN IP4 "):
            info.ip = value[len("IN IP4 "):].strip()
        elif kind == "m" and value.startswith("audio "):
            info.port = _parse_port(value)
        elif kind == "a":
            attr, attr_value = parse_attribute(value)
            if attr_value is None:
                continue
            if attr == "ice-ufrag":
                info.ice_ufrag = attr_value.strip()
            elif attr == "ice-pwd":
                info.ice_pwd = attr_value.strip()
            elif attr == "fingerprint":
                info.fingerprint = attr_value.strip()
            elif attr == "candidate":
                info.candidates.append(f"a={value}")

    missing = [
        name for name, present in (
            ("port", info.port > 0),
            ("ice-ufrag", info.ice_ufrag),
            ("ice-pwd", info.ice_pwd),
            ("fingerprint", info.fingerprint),
        ) if not present
    ]
    if missing:
        raise NegotiationError(f"リモートSDPに必要な値がありません: {', '.join(missing)}")

    logger.info(f"リモートSDP解析: ip={info.ip}, port={info.port}, ufrag={info.ice_ufrag}, "
                f"候補数={len(info.candidates)}")
    return info


def extract_local_offer_facts(sdp: str) -> LocalOfferFacts:
    """ローカルOfferからmidとopusのペイロードタイプ/fmtpを取り出す

    見つからない値はデフォルトのまま（デバイスによってOfferが変わるため）
    """
    facts = LocalOfferFacts()

    mids = find_attributes(sdp, "mid")
    if mids:
        facts.mid = mids[0].strip()

    for rtpmap in find_attributes(sdp, "rtpmap"):
        pt, _, codec = rtpmap.partition(" ")
        if codec.strip().lower() == OPUS_RTPMAP and pt.isdigit():
            facts.opus_payload_type = int(pt)
            break

    for fmtp in find_attributes(sdp, "fmtp"):
        pt, _, params = fmtp.partition(" ")
        if pt == str(facts.opus_payload_type) and params.strip():
            facts.opus_fmtp = params.strip()
            break

    return facts


def build_answer(remote: RemoteDescriptionInfo, local: LocalOfferFacts) -> str:
    """1つの音声セクションだけを持つAnswer SDPを組み立てる（opusのみ）"""
    pt = local.opus_payload_type
    lines = [
        "v=0",
        "o=- 0 0 IN IP4 0.0.0.0",
        "s=-",
        "t=0 0",
        f"a=group:BUNDLE {local.mid}",
        "a=msid-semantic: WMS *",
        f"m=audio {remote.port} {RTP_PROFILE} {pt}",
        f"c=IN IP4 {remote.ip}",
        f"a=rtcp:{remote.port}",
        f"a=ice-ufrag:{remote.ice_ufrag}",
        f"a=ice-pwd:{remote.ice_pwd}",
        f"a=fingerprint:{remote.fingerprint}",
        "a=setup:active",
        f"a=mid:{local.mid}",
        "a=sendrecv",
        "a=rtcp-mux",
        f"a=rtpmap:{pt} {OPUS_RTPMAP}",
        f"a=fmtp:{pt} {local.opus_fmtp}",
    ]
    lines.extend(remote.candidates)
    lines.append("")
    return "\r\n".join(lines)
