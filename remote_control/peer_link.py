"""
One direct WebRTC link carrying a single ordered data channel.

    IDLE -> OFFER_CREATED -> ANSWER_PENDING -> CONNECTED -> CLOSED   (offerer)
    IDLE -> ANSWER_CREATED -> CONNECTED -> CLOSED                    (answerer)

There is no failed state. A negotiation that never completes leaves the link
where it stopped and callers keep using the relay.
"""

import enum
import json
import logging
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Set, Tuple, Union

from aiortc import (
    RTCConfiguration,
    RTCIceCandidate,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.exceptions import InvalidStateError
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp
from pyee.asyncio import AsyncIOEventEmitter

from . import config
from .errors import LinkStateError, MessageError
from .events import Unsubscribe, subscribe

logger = logging.getLogger(__name__)


class LinkState(enum.Enum):
    IDLE = "idle"
    OFFER_CREATED = "offer-created"
    ANSWER_PENDING = "answer-pending"
    ANSWER_CREATED = "answer-created"
    CONNECTED = "connected"
    CLOSED = "closed"


# ---------------- ICE candidate wire format ----------------

def candidate_to_json(candidate: RTCIceCandidate, username_fragment: Optional[str] = None) -> str:
    """Serialize like the browser's RTCIceCandidate.toJSON(), field order included."""
    return json.dumps({
        "candidate": "candidate:" + candidate_to_sdp(candidate),
        "sdpMid": candidate.sdpMid,
        "sdpMLineIndex": candidate.sdpMLineIndex,
        "usernameFragment": username_fragment,
    })


def candidate_from_json(raw: Union[str, Dict[str, Any]]) -> Optional[RTCIceCandidate]:
    """Parse a serialized candidate. Returns None for the empty end-of-candidates marker."""
    try:
        data = json.loads(raw) if isinstance(raw, str) else raw
        line = data.get("candidate") or ""
    except (AttributeError, ValueError) as e:
        raise MessageError(f"bad ice candidate {raw!r}: {e}") from e
    if not isinstance(line, str):
        raise MessageError(f"bad ice candidate {raw!r}")

    if line.startswith("a="):
        line = line[2:]
    if line.startswith("candidate:"):
        line = line[len("candidate:"):]
    if not line:
        return None

    try:
        candidate = candidate_from_sdp(line)
    except (AssertionError, IndexError, KeyError, ValueError) as e:
        raise MessageError(f"bad ice candidate {line!r}: {e}") from e
    candidate.sdpMid = data.get("sdpMid")
    candidate.sdpMLineIndex = data.get("sdpMLineIndex")
    return candidate


def local_candidates(sdp: str) -> Iterator[str]:
    """
    Yield every candidate embedded in a local description, serialized.

    aiortc gathers before returning the description, so there is no separate
    icecandidate event; peers that expect trickled candidates get them from here.
    """
    sections: List[Dict[str, Any]] = []
    session_ufrag = None
    for line in sdp.splitlines():
        if line.startswith("m="):
            sections.append({"mid": None, "ufrag": session_ufrag, "candidates": []})
        elif line.startswith("a=ice-ufrag:"):
            if sections:
                sections[-1]["ufrag"] = line[len("a=ice-ufrag:"):]
            else:
                session_ufrag = line[len("a=ice-ufrag:"):]
        elif not sections:
            continue
        elif line.startswith("a=mid:"):
            sections[-1]["mid"] = line[len("a=mid:"):]
        elif line.startswith("a=candidate:"):
            sections[-1]["candidates"].append(line[len("a=candidate:"):])

    for index, section in enumerate(sections):
        for value in section["candidates"]:
            candidate = candidate_from_sdp(value)
            candidate.sdpMid = section["mid"]
            candidate.sdpMLineIndex = index
            yield candidate_to_json(candidate, section["ufrag"])


def _candidate_key(candidate: RTCIceCandidate) -> Tuple[str, Optional[str], Optional[int]]:
    return candidate_to_sdp(candidate), candidate.sdpMid, candidate.sdpMLineIndex


def _description(desc: Union[str, RTCSessionDescription], kind: str) -> RTCSessionDescription:
    if isinstance(desc, RTCSessionDescription):
        return desc
    return RTCSessionDescription(sdp=desc, type=kind)


def create_connection(ice_servers: Optional[Sequence[str]] = None) -> RTCPeerConnection:
    if ice_servers is None:
        ice_servers = [config.STUN_URL]
    return RTCPeerConnection(
        RTCConfiguration([RTCIceServer(urls=url) for url in ice_servers])
    )


class PeerLink(AsyncIOEventEmitter):
    """
    Events:
      icecandidate (str)  serialized local candidate to forward to the peer
      open / close        data channel lifecycle
      message (str)       text received on the data channel
      state (LinkState)
    """

    def __init__(
        self,
        connection_factory: Optional[Callable[[], Any]] = None,
        ice_servers: Optional[Sequence[str]] = None,
        label: str = config.DATA_CHANNEL_LABEL,
    ):
        super().__init__()
        if connection_factory is None:
            self.pc = create_connection(ice_servers)
        else:
            self.pc = connection_factory()
        self.label = label
        self.channel = None
        self.state = LinkState.IDLE

        self._remote_set = False
        self._pending: List[RTCIceCandidate] = []
        self._seen: Set[Tuple[str, Optional[str], Optional[int]]] = set()

        self.pc.on("datachannel", self._on_datachannel)

    # ------------------ subscriptions ------------------

    def on_ice_candidate_generated(self, handler: Callable[[str], Any]) -> Unsubscribe:
        return subscribe(self, "icecandidate", handler)

    def on_data_channel_ready(self, handler: Callable[[], Any]) -> Unsubscribe:
        return subscribe(self, "open", handler)

    def on_data_channel_closed(self, handler: Callable[[], Any]) -> Unsubscribe:
        return subscribe(self, "close", handler)

    def on_message(self, handler: Callable[[str], Any]) -> Unsubscribe:
        return subscribe(self, "message", handler)

    @property
    def is_open(self) -> bool:
        return (
            self.state is not LinkState.CLOSED
            and self.channel is not None
            and self.channel.readyState == "open"
        )

    # ------------------ handshake ------------------

    def _require(self, *states: LinkState):
        if self.state not in states:
            allowed = ", ".join(s.value for s in states)
            raise LinkStateError(f"link is {self.state.value}, expected {allowed}")

    def _set_state(self, state: LinkState):
        logger.debug(f"link {self.state.value} -> {state.value}")
        self.state = state
        self.emit("state", state)

    def _emit_local_candidates(self):
        for candidate in local_candidates(self.pc.localDescription.sdp):
            self.emit("icecandidate", candidate)

    async def create_offer(self) -> RTCSessionDescription:
        self._require(LinkState.IDLE)

        self._attach_channel(self.pc.createDataChannel(self.label, ordered=True))
        offer = await self.pc.createOffer()
        await self.pc.setLocalDescription(offer)

        self._set_state(LinkState.OFFER_CREATED)
        self._emit_local_candidates()
        return self.pc.localDescription

    async def create_answer(self, remote_offer: Union[str, RTCSessionDescription]) -> RTCSessionDescription:
        self._require(LinkState.IDLE)

        await self.pc.setRemoteDescription(_description(remote_offer, "offer"))
        answer = await self.pc.createAnswer()
        await self.pc.setLocalDescription(answer)

        self._set_state(LinkState.ANSWER_CREATED)
        self._emit_local_candidates()
        await self._flush_pending()
        return self.pc.localDescription

    async def accept_answer(self, remote_answer: Union[str, RTCSessionDescription]):
        self._require(LinkState.OFFER_CREATED)

        await self.pc.setRemoteDescription(_description(remote_answer, "answer"))

        self._set_state(LinkState.ANSWER_PENDING)
        await self._flush_pending()

    # ------------------ ICE ------------------

    async def add_remote_ice_candidate(self, candidate: Union[str, Dict[str, Any], RTCIceCandidate]):
        """
        Apply a remote candidate, or buffer it until the remote description is set.

        Each distinct candidate is applied at most once.
        """
        if self.state is LinkState.CLOSED:
            raise LinkStateError("link is closed")

        if not isinstance(candidate, RTCIceCandidate):
            candidate = candidate_from_json(candidate)
            if candidate is None:
                return

        key = _candidate_key(candidate)
        if key in self._seen:
            logger.debug(f"duplicate ICE candidate ignored: {key[0]}")
            return
        self._seen.add(key)

        if not self._remote_set:
            self._pending.append(candidate)
            return
        await self._apply(candidate)

    async def _flush_pending(self):
        # candidates arriving while we drain are appended and drained here too
        while self._pending:
            await self._apply(self._pending.pop(0))
        self._remote_set = True

    async def _apply(self, candidate: RTCIceCandidate):
        try:
            await self.pc.addIceCandidate(candidate)
        except Exception as e:
            # the description already carried it, or the transport is gone
            logger.debug(f"ICE candidate not applied: {e}")

    # ------------------ data channel ------------------

    def _attach_channel(self, channel):
        self.channel = channel
        channel.on("open", self._on_channel_open)
        channel.on("close", self._on_channel_close)
        channel.on("message", self._on_channel_message)
        if channel.readyState == "open":
            self._on_channel_open()

    def _on_datachannel(self, channel):
        if self.channel is not None:
            logger.warning(f"extra data channel {channel.label!r} ignored")
            return
        self._attach_channel(channel)

    def _on_channel_open(self):
        if self.state in (LinkState.CONNECTED, LinkState.CLOSED):
            return
        logger.info("DC OPEN")
        self._set_state(LinkState.CONNECTED)
        self.emit("open")

    def _on_channel_close(self):
        logger.info("DC CLOSED")
        self.emit("close")

    def _on_channel_message(self, msg):
        if not isinstance(msg, str):
            return
        self.emit("message", msg)

    def send(self, payload) -> bool:
        """Send on the data channel. Returns False, without raising, if it is not open."""
        if not self.is_open:
            return False

        if isinstance(payload, str):
            data = payload
        elif isinstance(payload, dict):
            data = json.dumps(payload)
        else:
            data = json.dumps(payload.to_dict())

        try:
            self.channel.send(data)
        except InvalidStateError:
            return False
        return True

    async def close(self):
        if self.state is LinkState.CLOSED:
            return
        self._set_state(LinkState.CLOSED)
        self._pending.clear()
        await self.pc.close()
        self.remove_all_listeners()
