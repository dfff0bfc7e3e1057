class RemoteControlError(Exception):
    """Base class for every error raised by this package."""


class MessageError(RemoteControlError, ValueError):
    """A wire message could not be decoded."""


class ControlStateError(RemoteControlError, ValueError):
    """A control update named an unknown input or carried a bad value."""


class LinkStateError(RemoteControlError):
    """A PeerLink operation was called from a state that does not allow it."""


class RoleConflictError(RemoteControlError):
    """A remote peer announced the same role as the local one."""
