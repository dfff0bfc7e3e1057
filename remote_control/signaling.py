import asyncio
import contextlib
import logging
from typing import Any, Callable, Dict, List, Optional

from pyee.asyncio import AsyncIOEventEmitter

from .errors import MessageError, RoleConflictError
from .events import Unsubscribe
from .messages import SIGNALING_TYPES, Answer, IceCandidate, Offer, decode
from .peer_link import LinkState, PeerLink
from .relay import PresenceEvent, RelayChannel
from .role import Role, check_peer_role

logger = logging.getLogger(__name__)


class SignalingBridge(AsyncIOEventEmitter):
    """
    Drives the offer/answer/ICE handshake of a PeerLink over a RelayChannel.

    The receiver offers as soon as a remote peer enters the room; the
    controller answers the offer it receives. Relay presence and events go
    through one inbox and are handled in arrival order by a single task.

    Only one remote peer is paired at a time. Others of the opposite role that
    enter meanwhile wait on standby, are reported as role_conflict, and have
    their signaling ignored. When the paired peer leaves, the oldest standby
    peer takes its place.

    Events:
      link (PeerLink)            a new link was prepared for a connection attempt
      peer (str | None)          the remote peer entered, or the last one left
      connected / disconnected   data channel of the current link opened / closed
      message (str)              text received on the data channel
      role_conflict (PresenceEvent)
    """

    def __init__(
        self,
        role: Role,
        relay: RelayChannel,
        link_factory: Callable[[], PeerLink] = PeerLink,
    ):
        super().__init__()
        self.role = role
        self.relay = relay
        self.link_factory = link_factory
        self.link: Optional[PeerLink] = None
        self.remote_peer: Optional[str] = None
        self.standby: Dict[str, Dict[str, Any]] = {}

        self._inbox: Optional[asyncio.Queue] = None
        self._pump_task: Optional[asyncio.Task] = None
        self._unsubscribe: List[Unsubscribe] = []
        self._link_unsubscribe: List[Unsubscribe] = []
        self._closed = False

    @property
    def connected(self) -> bool:
        return self.link is not None and self.link.state is LinkState.CONNECTED

    def start(self):
        if self._pump_task is not None:
            return
        self._inbox = asyncio.Queue()
        self._new_link()
        self._unsubscribe = [
            self.relay.on_presence(self._inbox.put_nowait),
            self.relay.on_event_from(self._on_relay_event),
        ]
        self._pump_task = asyncio.create_task(self._pump())

    async def close(self):
        if self._closed:
            return
        self._closed = True

        for unsubscribe in self._unsubscribe + self._link_unsubscribe:
            unsubscribe()
        self._unsubscribe, self._link_unsubscribe = [], []

        if self._pump_task is not None:
            self._pump_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._pump_task
        if self.link is not None:
            await self.link.close()
        self.remove_all_listeners()

    # ------------------ link lifecycle ------------------

    def _new_link(self):
        for unsubscribe in self._link_unsubscribe:
            unsubscribe()

        link = self.link_factory()
        self._link_unsubscribe = [
            link.on_ice_candidate_generated(self._on_local_candidate),
            link.on_data_channel_ready(self._on_channel_ready),
            link.on_data_channel_closed(self._on_channel_closed),
            link.on_message(self._on_link_message),
        ]
        self.link = link
        self.emit("link", link)

    async def _reset_link(self):
        old = self.link
        self._new_link()
        if old is not None:
            await old.close()

    def _on_local_candidate(self, candidate: str):
        if self.link.state is LinkState.CONNECTED:
            return
        self.relay.broadcast(IceCandidate(candidate))

    def _on_channel_ready(self):
        logger.info("Channel opened!")
        self.emit("connected")

    def _on_channel_closed(self):
        logger.info("Channel closed!")
        self.emit("disconnected")

    def _on_link_message(self, raw: str):
        self.emit("message", raw)

    def _set_remote_peer(self, peer_id: Optional[str]):
        if peer_id == self.remote_peer:
            return
        self.remote_peer = peer_id
        logger.info("Has control" if peer_id else "Has no control")
        self.emit("peer", peer_id)

    # ------------------ inbox ------------------

    async def _pump(self):
        while True:
            item = await self._inbox.get()
            try:
                if isinstance(item, PresenceEvent):
                    await self._handle_presence(item)
                else:
                    await self._handle_event(*item)
            except Exception:
                # no escalation: the link stays where it stopped and sync uses the relay
                logger.exception("Signaling step failed")

    def _on_relay_event(self, sender: Optional[str], event: Any):
        self._inbox.put_nowait((sender, event))

    async def _handle_presence(self, event: PresenceEvent):
        if self.relay.is_self(event):
            return

        if event.type == "enter":
            try:
                check_peer_role(self.role, event.presence)
            except RoleConflictError as e:
                logger.error(f"Ignoring peer {event.peer_id}: {e}")
                self.emit("role_conflict", event)
                return

            if self.remote_peer is not None and event.peer_id != self.remote_peer:
                logger.warning(f"Already paired with {self.remote_peer}, {event.peer_id} waits")
                self.standby[event.peer_id] = event.presence
                self.emit("role_conflict", event)
                return

            await self._pair(event.peer_id)

        elif event.type == "leave":
            self.standby.pop(event.peer_id, None)
            if event.peer_id != self.remote_peer:
                return
            self._set_remote_peer(None)
            # next pairing starts a fresh connection attempt
            await self._reset_link()
            if self.standby:
                await self._pair(next(iter(self.standby)))

    async def _pair(self, peer_id: str):
        self.standby.pop(peer_id, None)
        self._set_remote_peer(peer_id)
        if self.role is Role.RECEIVER:
            await self._send_offer()

    async def _handle_event(self, sender: Optional[str], data: Any):
        if isinstance(data, dict) and data.get("type") not in SIGNALING_TYPES:
            return  # controls updates and friends belong to the sync layer

        try:
            message = decode(data)
        except MessageError as e:
            logger.warning(f"Dropping malformed signaling message: {e}")
            return

        if sender is None or sender != self.remote_peer:
            logger.warning(f"Dropping {type(message).__name__} from unpaired peer {sender}")
            return

        if isinstance(message, Offer):
            await self._on_offer(message)
        elif isinstance(message, Answer):
            await self._on_answer(message)
        elif isinstance(message, IceCandidate):
            await self._on_candidate(message)

    # ------------------ handshake steps ------------------

    async def _send_offer(self):
        if self.link.state is not LinkState.IDLE:
            logger.info(f"Link is {self.link.state.value}, not offering again")
            return
        offer = await self.link.create_offer()
        self.relay.broadcast(Offer(offer.sdp))
        logger.info("Offer sent")

    async def _on_offer(self, message: Offer):
        if self.role is not Role.CONTROLLER:
            logger.warning("Receiver got an offer, dropped")
            return
        if self.link.state is not LinkState.IDLE:
            logger.warning(f"Unexpected offer while {self.link.state.value}, dropped")
            return
        answer = await self.link.create_answer(message.sdp)
        self.relay.broadcast(Answer(answer.sdp))
        logger.info("Answer sent")

    async def _on_answer(self, message: Answer):
        if self.role is not Role.RECEIVER:
            logger.warning("Controller got an answer, dropped")
            return
        if self.link.state is not LinkState.OFFER_CREATED:
            logger.warning(f"Unexpected answer while {self.link.state.value}, dropped")
            return
        await self.link.accept_answer(message.sdp)
        logger.info("Answer received!")

    async def _on_candidate(self, message: IceCandidate):
        if self.link.state is LinkState.CLOSED:
            return
        try:
            await self.link.add_remote_ice_candidate(message.candidate)
        except MessageError as e:
            logger.warning(f"Dropping ICE candidate: {e}")
