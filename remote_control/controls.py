import copy
import math
from typing import Any, Dict, Mapping

from .errors import ControlStateError

DEFAULT_CONTROLS = {"a": False, "b": False, "trackpad": [0, 0]}
BUTTON_CONTROLS = {"a": False, "b": False}

TRACKPAD_MIN = -1.0
TRACKPAD_MAX = 1.0


def clamp(value: float, lo: float = TRACKPAD_MIN, hi: float = TRACKPAD_MAX) -> float:
    return max(lo, min(hi, value))


def _coerce(key: str, value: Any) -> Any:
    if key == "trackpad":
        try:
            x, y = value
            x, y = float(x), float(y)
        except (TypeError, ValueError):
            raise ControlStateError(f"trackpad must be a pair of numbers, got {value!r}")
        if not (math.isfinite(x) and math.isfinite(y)):
            raise ControlStateError(f"trackpad coordinates must be finite, got {value!r}")
        return [clamp(x), clamp(y)]
    if not isinstance(value, bool):
        raise ControlStateError(f"button {key!r} must be a bool, got {value!r}")
    return value


class ControlState:
    """
    The small shared value kept in sync between Controller and Receiver.

    Keys are fixed by the variant passed at construction. Local writes merge,
    remote snapshots replace the whole value.
    """

    def __init__(self, initial: Mapping[str, Any] = DEFAULT_CONTROLS):
        self._values: Dict[str, Any] = {k: _coerce(k, v) for k, v in initial.items()}

    @property
    def keys(self):
        return frozenset(self._values)

    def merge(self, partial: Mapping[str, Any]) -> None:
        unknown = set(partial) - set(self._values)
        if unknown:
            raise ControlStateError(f"unknown controls: {sorted(unknown)}")
        # validate everything before touching state
        coerced = {k: _coerce(k, v) for k, v in partial.items()}
        self._values.update(coerced)

    def replace(self, snapshot: Mapping[str, Any]) -> None:
        if set(snapshot) != set(self._values):
            raise ControlStateError(
                f"snapshot keys {sorted(snapshot)} do not match {sorted(self._values)}"
            )
        self._values = {k: _coerce(k, v) for k, v in snapshot.items()}

    def snapshot(self) -> Dict[str, Any]:
        return copy.deepcopy(self._values)

    def __getitem__(self, key: str) -> Any:
        return self._values[key]

    def __eq__(self, other) -> bool:
        if isinstance(other, ControlState):
            return self._values == other._values
        if isinstance(other, Mapping):
            return self._values == dict(other)
        return NotImplemented

    def __repr__(self) -> str:
        return f"ControlState({self._values!r})"
