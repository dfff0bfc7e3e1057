import enum
import hashlib
from typing import Any, Mapping, Optional
from urllib.parse import parse_qs, urlencode, urlsplit

from . import config
from .errors import RoleConflictError


class Role(enum.Enum):
    CONTROLLER = "control"
    RECEIVER = "receiver"

    @property
    def presence(self) -> dict:
        return {"type": self.value}


def room_from_url(url: Optional[str], param: str = config.CONTROL_PARAM) -> Optional[str]:
    """Return the room id carried by the control flag, or None."""
    if not url:
        return None
    values = parse_qs(urlsplit(url).query).get(param)
    if not values or not values[0]:
        return None
    return values[0]


def resolve_role(url: Optional[str], param: str = config.CONTROL_PARAM) -> Role:
    return Role.CONTROLLER if room_from_url(url, param) else Role.RECEIVER


def controller_url(site_url: str, room_id: str, path: str = config.CONTROL_PATH,
                   param: str = config.CONTROL_PARAM) -> str:
    return site_url.rstrip("/") + path + "?" + urlencode({param: room_id})


def room_hash(seed: str) -> str:
    return hashlib.sha256(seed.encode("utf-8")).hexdigest()


def check_peer_role(role: Role, presence: Optional[Mapping[str, Any]]) -> None:
    """
    Raise RoleConflictError if the remote presence announces our own role.

    Peers that announce nothing are accepted.
    """
    if not presence:
        return
    if presence.get("type") == role.value:
        raise RoleConflictError(f"remote peer is also a {role.value}")
