import logging
from typing import Any, Callable, Dict, Mapping

from pyee.asyncio import AsyncIOEventEmitter

from .controls import DEFAULT_CONTROLS, ControlState
from .errors import ControlStateError, MessageError
from .events import Unsubscribe, subscribe
from .messages import CONTROLS_UPDATE, ControlsUpdate, decode
from .relay import RelayChannel
from .signaling import SignalingBridge

logger = logging.getLogger(__name__)

DATACHANNEL = "datachannel"
RELAY = "relay"


class SyncManager(AsyncIOEventEmitter):
    """
    Owns the ControlState and replicates it over whichever transport works.

    Every local change sends the whole state: over the data channel when it is
    open, as a relay broadcast otherwise. Every inbound snapshot, from either
    transport, replaces the local state wholesale. There are no acks and no
    sequence numbers, so snapshots racing over both transports can overwrite
    a newer value with an older one until the next input.
    """

    def __init__(
        self,
        bridge: SignalingBridge,
        relay: RelayChannel,
        initial: Mapping[str, Any] = DEFAULT_CONTROLS,
    ):
        super().__init__()
        self.bridge = bridge
        self.relay = relay
        self._state = ControlState(initial)
        self._unsubscribe = [
            subscribe(bridge, "message", self.on_remote_update),
            relay.on_event_from(self._on_relay_update),
        ]

    @property
    def state(self) -> Dict[str, Any]:
        return self._state.snapshot()

    def on_update(self, handler: Callable[[Dict[str, Any]], Any]) -> Unsubscribe:
        return subscribe(self, "update", handler)

    def set_local(self, partial: Mapping[str, Any]) -> str:
        """Merge partial into the state and transmit the result. Returns the transport used."""
        self._state.merge(partial)
        message = ControlsUpdate(self._state.snapshot())

        link = self.bridge.link
        if link is not None and link.send(message):
            return DATACHANNEL

        self.relay.broadcast(message)
        return RELAY

    def _on_relay_update(self, sender: str, raw):
        paired = self.bridge.remote_peer
        if paired is not None and sender != paired:
            logger.debug(f"ignoring relay update from unpaired peer {sender}")
            return
        self.on_remote_update(raw)

    def on_remote_update(self, raw):
        if isinstance(raw, dict) and raw.get("type") != CONTROLS_UPDATE:
            return

        try:
            message = decode(raw)
        except MessageError as e:
            logger.warning(f"Dropping malformed update: {e}")
            return
        if not isinstance(message, ControlsUpdate):
            return

        try:
            self._state.replace(message.controls)
        except ControlStateError as e:
            logger.warning(f"Dropping controls update: {e}")
            return

        logger.debug(f"Update controls! {message.controls}")
        self.emit("update", self.state)

    def close(self):
        for unsubscribe in self._unsubscribe:
            unsubscribe()
        self._unsubscribe = []
        self.remove_all_listeners()
