"""
Wire messages exchanged over the relay and the peer data channel.

    { type: "webrtc-offer",  offer:  {type: "offer",  sdp} }
    { type: "webrtc-answer", answer: {type: "answer", sdp} }
    { type: "webrtc-ice-candidate", candidate: <JSON-encoded ICE candidate> }
    { type: "controls-update", controls: {a, b, trackpad} }
"""

import json
from dataclasses import dataclass
from typing import Any, Dict, Union

from .errors import MessageError

OFFER = "webrtc-offer"
ANSWER = "webrtc-answer"
ICE_CANDIDATE = "webrtc-ice-candidate"
CONTROLS_UPDATE = "controls-update"

SIGNALING_TYPES = (OFFER, ANSWER, ICE_CANDIDATE)


@dataclass(frozen=True)
class Offer:
    sdp: str

    def to_dict(self) -> Dict[str, Any]:
        return {"type": OFFER, "offer": {"type": "offer", "sdp": self.sdp}}


@dataclass(frozen=True)
class Answer:
    sdp: str

    def to_dict(self) -> Dict[str, Any]:
        return {"type": ANSWER, "answer": {"type": "answer", "sdp": self.sdp}}


@dataclass(frozen=True)
class IceCandidate:
    candidate: str

    def to_dict(self) -> Dict[str, Any]:
        return {"type": ICE_CANDIDATE, "candidate": self.candidate}


@dataclass(frozen=True)
class ControlsUpdate:
    controls: Dict[str, Any]

    def to_dict(self) -> Dict[str, Any]:
        return {"type": CONTROLS_UPDATE, "controls": self.controls}


SignalingMessage = Union[Offer, Answer, IceCandidate, ControlsUpdate]


def _sdp(value: Any, expected: str) -> str:
    # browsers send the whole RTCSessionDescription, older clients a bare string
    if isinstance(value, str):
        return value
    if isinstance(value, dict):
        kind = value.get("type", expected)
        sdp = value.get("sdp")
        if kind == expected and isinstance(sdp, str):
            return sdp
    raise MessageError(f"bad {expected} description: {value!r}")


def from_dict(pkt: Any) -> SignalingMessage:
    if not isinstance(pkt, dict):
        raise MessageError(f"message must be an object, got {type(pkt).__name__}")

    t = pkt.get("type")

    if t == OFFER:
        return Offer(_sdp(pkt.get("offer"), "offer"))

    if t == ANSWER:
        return Answer(_sdp(pkt.get("answer"), "answer"))

    if t == ICE_CANDIDATE:
        candidate = pkt.get("candidate")
        if isinstance(candidate, dict):
            candidate = json.dumps(candidate)
        if not isinstance(candidate, str):
            raise MessageError(f"bad ice candidate: {candidate!r}")
        return IceCandidate(candidate)

    if t == CONTROLS_UPDATE:
        controls = pkt.get("controls")
        if not isinstance(controls, dict):
            raise MessageError(f"bad controls: {controls!r}")
        return ControlsUpdate(controls)

    raise MessageError(f"unknown message type: {t!r}")


def decode(raw: Union[str, bytes, Dict[str, Any]]) -> SignalingMessage:
    if isinstance(raw, dict):
        return from_dict(raw)
    try:
        pkt = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise MessageError(f"not JSON: {e}") from e
    return from_dict(pkt)


def encode(message: SignalingMessage) -> str:
    return json.dumps(message.to_dict())
