"""
Remote control link: pairs a controller and a receiver through a presence
relay, upgrades them to a direct WebRTC data channel and keeps a small
control state replicated over whichever transport works.
"""

from .controls import BUTTON_CONTROLS, DEFAULT_CONTROLS, ControlState
from .errors import (
    ControlStateError,
    LinkStateError,
    MessageError,
    RemoteControlError,
    RoleConflictError,
)
from .peer_link import LinkState, PeerLink
from .relay import PresenceEvent, RelayChannel, Room
from .relay_server import RelayServer
from .role import Role, controller_url, resolve_role, room_from_url, room_hash
from .signaling import SignalingBridge
from .sync import SyncManager

__all__ = [
    "BUTTON_CONTROLS",
    "DEFAULT_CONTROLS",
    "ControlState",
    "ControlStateError",
    "LinkState",
    "LinkStateError",
    "MessageError",
    "PeerLink",
    "PresenceEvent",
    "RelayChannel",
    "RelayServer",
    "RemoteControlError",
    "Role",
    "RoleConflictError",
    "Room",
    "SignalingBridge",
    "SyncManager",
    "controller_url",
    "resolve_role",
    "room_from_url",
    "room_hash",
]

__version__ = "0.1.0"
