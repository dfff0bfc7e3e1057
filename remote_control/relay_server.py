"""
Presence/event relay: rooms of websocket members.

Client frames (JSON):
  {action: "join", room, presence}      first frame, required
  {action: "broadcast", event}          forwarded to every other member
  {action: "leave"}

Server frames (JSON):
  {type: "joined", room, connectionId, others: [user]}
  {type: "others", event: "enter"|"leave", user, count}   enter is echoed to the joiner
  {type: "event", connectionId, event}
"""

import contextlib
import json
import logging
import uuid
from typing import Dict

import websockets

logger = logging.getLogger(__name__)


class Member:
    def __init__(self, ws, connection_id: str, presence: dict):
        self.ws = ws
        self.connection_id = connection_id
        self.presence = presence

    def user(self) -> dict:
        return {"connectionId": self.connection_id, "presence": self.presence}


class RelayServer:
    def __init__(self):
        # {room_id: {connection_id: Member}}
        self.rooms: Dict[str, Dict[str, Member]] = {}

    async def _send(self, member: Member, payload: dict):
        try:
            await member.ws.send(json.dumps(payload))
        except websockets.ConnectionClosed:
            pass  # cleanup happens in the member's own handler

    async def _notify(self, room_id: str, event: str, subject: Member):
        members = self.rooms.get(room_id, {})
        # others as seen by each recipient
        count = len(members) - 1
        for m in list(members.values()):
            await self._send(m, {
                "type": "others",
                "event": event,
                "user": subject.user(),
                "count": count,
            })

    async def _broadcast(self, room_id: str, sender: Member, event):
        for m in list(self.rooms.get(room_id, {}).values()):
            if m is sender:
                continue
            await self._send(m, {
                "type": "event",
                "connectionId": sender.connection_id,
                "event": event,
            })

    async def handler(self, ws):
        try:
            hello = json.loads(await ws.recv())
        except (ValueError, websockets.ConnectionClosed):
            return

        if not isinstance(hello, dict) or hello.get("action") != "join" or not hello.get("room"):
            logger.warning("first frame was not a join, closing")
            await ws.close()
            return

        room_id = str(hello["room"])
        presence = hello.get("presence") or {}
        member = Member(ws, uuid.uuid4().hex[:8], presence)
        room = self.rooms.setdefault(room_id, {})
        others = [m.user() for m in room.values()]
        room[member.connection_id] = member
        logger.info(f"[{room_id}] {member.connection_id} joined {presence}")

        try:
            await ws.send(json.dumps({
                "type": "joined",
                "room": room_id,
                "connectionId": member.connection_id,
                "others": others,
            }))
            await self._notify(room_id, "enter", member)

            async for raw in ws:
                try:
                    data = json.loads(raw)
                except ValueError:
                    continue
                if not isinstance(data, dict):
                    continue

                action = data.get("action")
                if action == "broadcast":
                    await self._broadcast(room_id, member, data.get("event"))
                elif action == "leave":
                    break

        except websockets.ConnectionClosed:
            pass
        finally:
            room = self.rooms.get(room_id, {})
            room.pop(member.connection_id, None)
            if not room:
                self.rooms.pop(room_id, None)
            else:
                await self._notify(room_id, "leave", member)
            logger.info(f"[{room_id}] {member.connection_id} left")

    @contextlib.asynccontextmanager
    async def serve(self, host: str, port: int):
        async with websockets.serve(self.handler, host, port) as server:
            yield server
