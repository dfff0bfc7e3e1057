import asyncio
import contextlib
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Set, Union

import websockets
from pyee.asyncio import AsyncIOEventEmitter

from . import config
from .events import Unsubscribe, subscribe
from .messages import SignalingMessage

logger = logging.getLogger(__name__)


@dataclass
class Room:
    id: str
    self_peer_id: str
    remote_peer_ids: Set[str] = field(default_factory=set)


@dataclass(frozen=True)
class PresenceEvent:
    type: str  # "enter" | "leave"
    peer_id: str
    presence: Dict[str, Any]
    count: int


class RelayChannel(AsyncIOEventEmitter):
    """
    Client side of one relay room.

    Events:
      presence (PresenceEvent)  peer enter/leave, including the relay's echo of us
      event (dict)              payload broadcast by another member
      event_from (str, dict)    same, with the sender's connection id first
    """

    def __init__(self, url: str = config.RELAY_URL):
        super().__init__()
        self.url = url
        self.room: Optional[Room] = None
        self._ws = None
        self._outbox: Optional[asyncio.Queue] = None
        self._reader: Optional[asyncio.Task] = None
        self._writer: Optional[asyncio.Task] = None

    @property
    def joined(self) -> bool:
        return self.room is not None

    def is_self(self, event: PresenceEvent) -> bool:
        return self.room is not None and event.peer_id == self.room.self_peer_id

    def on_presence(self, handler: Callable[[PresenceEvent], Any]) -> Unsubscribe:
        return subscribe(self, "presence", handler)

    def on_event(self, handler: Callable[[Dict[str, Any]], Any]) -> Unsubscribe:
        return subscribe(self, "event", handler)

    def on_event_from(self, handler: Callable[[str, Dict[str, Any]], Any]) -> Unsubscribe:
        return subscribe(self, "event_from", handler)

    # ------------------ membership ------------------

    async def join(self, room_id: str, presence: Dict[str, Any]) -> Optional[Room]:
        """
        Join room_id announcing presence.

        Returns the Room, or None if the relay could not be reached. Failures
        are logged, never raised.
        """
        if self.room is not None:
            logger.warning(f"already joined {self.room.id}, ignoring join({room_id})")
            return self.room

        try:
            ws = await websockets.connect(self.url)
        except (OSError, asyncio.TimeoutError, websockets.WebSocketException) as e:
            logger.error(f"Error connecting to relay {self.url}: {e}")
            return None

        try:
            await ws.send(json.dumps({"action": "join", "room": room_id, "presence": presence}))
            ack = json.loads(await ws.recv())
        except (ValueError, websockets.WebSocketException) as e:
            logger.error(f"Error joining room {room_id}: {e}")
            await ws.close()
            return None

        if not isinstance(ack, dict) or ack.get("type") != "joined" or not ack.get("connectionId"):
            logger.error(f"Unexpected join acknowledgement: {ack!r}")
            await ws.close()
            return None

        self._ws = ws
        self.room = Room(id=room_id, self_peer_id=ack["connectionId"])
        self._outbox = asyncio.Queue()
        self._writer = asyncio.create_task(self._write_loop(ws, self._outbox))
        logger.info(f"Room connection successful: {room_id} as {self.room.self_peer_id}")

        # members already present show up as enter events
        others = ack.get("others") or []
        for user in others:
            self._on_presence_frame({"event": "enter", "user": user, "count": len(others)})

        self._reader = asyncio.create_task(self._read_loop(ws))
        return self.room

    async def leave(self):
        """Leave the room and drop every listener. Safe to call repeatedly."""
        room, self.room = self.room, None

        if self._outbox is not None:
            self._outbox.put_nowait({"action": "leave"})
            self._outbox.put_nowait(None)
        if self._writer is not None:
            await self._writer
        if self._reader is not None:
            self._reader.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._reader
        if self._ws is not None:
            await self._ws.close()

        self._ws = self._outbox = self._reader = self._writer = None
        self.remove_all_listeners()
        if room is not None:
            logger.info(f"Left room {room.id}")

    # ------------------ traffic ------------------

    def broadcast(self, message: Union[SignalingMessage, Dict[str, Any]]):
        """Queue message for every other member. No-op when not joined."""
        if self._outbox is None or self.room is None:
            logger.debug("broadcast while not joined, dropped")
            return
        payload = message if isinstance(message, dict) else message.to_dict()
        self._outbox.put_nowait({"action": "broadcast", "event": payload})

    async def _write_loop(self, ws, outbox: asyncio.Queue):
        while True:
            frame = await outbox.get()
            if frame is None:
                return
            try:
                await ws.send(json.dumps(frame))
            except websockets.ConnectionClosed:
                logger.warning("Relay connection closed, dropping outgoing messages")
                return

    async def _read_loop(self, ws):
        try:
            async for raw in ws:
                try:
                    data = json.loads(raw)
                except ValueError:
                    logger.debug(f"non-JSON relay frame dropped: {raw!r}")
                    continue
                if not isinstance(data, dict):
                    continue

                t = data.get("type")
                if t == "others":
                    self._on_presence_frame(data)
                elif t == "event":
                    self.emit("event", data.get("event"))
                    self.emit("event_from", data.get("connectionId"), data.get("event"))
        except websockets.ConnectionClosed:
            pass

        if self.room is not None:
            logger.warning(f"Relay connection lost, left room {self.room.id}")
            self._drop_room()

    def _drop_room(self):
        # broadcast becomes a no-op; the writer drains what is queued and stops
        self.room = None
        if self._outbox is not None:
            self._outbox.put_nowait(None)
            self._outbox = None

    def _on_presence_frame(self, data: Dict[str, Any]):
        user = data.get("user") or {}
        peer_id = user.get("connectionId")
        kind = data.get("event")
        if not peer_id or kind not in ("enter", "leave"):
            logger.debug(f"malformed presence frame dropped: {data!r}")
            return

        event = PresenceEvent(
            type=kind,
            peer_id=peer_id,
            presence=user.get("presence") or {},
            count=int(data.get("count") or 0),
        )
        if self.room is not None and not self.is_self(event):
            if kind == "enter":
                self.room.remote_peer_ids.add(peer_id)
            else:
                self.room.remote_peer_ids.discard(peer_id)
        self.emit("presence", event)
