import asyncio
import functools
import logging
import socket
from typing import Any, Mapping, Optional, Sequence

from . import config
from .controls import DEFAULT_CONTROLS
from .errors import ControlStateError
from .peer_link import PeerLink
from .relay import RelayChannel
from .role import Role, controller_url, resolve_role, room_from_url, room_hash
from .serial_io import SerialInput, SerialOutput, StdinInput, open_serial
from .signaling import SignalingBridge
from .sync import SyncManager

logger = logging.getLogger(__name__)


async def run_session(
    url: Optional[str] = None,
    relay_url: str = config.RELAY_URL,
    room_id: Optional[str] = None,
    serial_port: Optional[str] = None,
    site_url: str = config.SITE_URL,
    ice_servers: Optional[Sequence[str]] = None,
    initial: Mapping[str, Any] = DEFAULT_CONTROLS,
    input_stream=None,
) -> bool:
    """
    Run one controller or receiver session until cancelled (or, for a
    controller, until its input ends).

    initial picks the control variant, e.g. BUTTON_CONTROLS for a pad with
    no trackpad. Without a serial port the controller reads input_stream
    (stdin by default).

    Returns False if the relay could not be joined.
    """
    role = resolve_role(url)
    if role is Role.CONTROLLER:
        room_id = room_from_url(url)
    elif room_id is None:
        room_id = room_hash(socket.gethostname())

    relay = RelayChannel(relay_url)
    bridge = SignalingBridge(role, relay, functools.partial(PeerLink, ice_servers=ice_servers))
    sync = SyncManager(bridge, relay, initial)
    ser = open_serial(serial_port) if serial_port else None

    def apply(update):
        try:
            transport = sync.set_local(update)
        except ControlStateError as e:
            logger.warning(f"Input rejected: {e}")
            return
        logger.debug(f"sent {update} via {transport}")

    try:
        bridge.start()
        room = await relay.join(room_id, role.presence)
        if room is None:
            logger.error("No relay connection, running without controller")
            return False

        if role is Role.RECEIVER:
            logger.info(f"Controller join URL: {controller_url(site_url, room_id)}")
            if ser is not None:
                sync.on_update(SerialOutput(ser).write_state)
            else:
                sync.on_update(lambda state: logger.info(f"controls {state}"))
            await asyncio.Future()
        else:
            source = SerialInput(ser, apply) if ser is not None else StdinInput(apply, input_stream)
            await source.run()
        return True
    finally:
        sync.close()
        await bridge.close()
        await relay.leave()
        if ser is not None:
            ser.close()
