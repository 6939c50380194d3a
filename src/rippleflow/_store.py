"""Value store: cached node values plus per-batch change flags.

Plain dicts keyed by node name. Values are only written through assign(),
which the engine calls from inside an active session.
"""

from __future__ import annotations

import math
from typing import Callable, Iterable


class _Unset:
    __slots__ = ()

    def __repr__(self) -> str:
        return "UNSET"

    def __bool__(self) -> bool:
        return False


# Returned for names that never received a value.
UNSET = _Unset()


def default_is_equal(old: object, new: object) -> bool:
    """Deep structural equality.

    Values of different types are never equal, so 1, 1.0 and True are all
    distinct. NaN equals NaN. Lists, tuples and dicts compare element-wise
    with the same rules; anything else falls back to ==.
    """
    if old is new:
        return True
    if type(old) is not type(new):
        return False
    if isinstance(old, float):
        return old == new or (math.isnan(old) and math.isnan(new))
    if isinstance(old, (list, tuple)):
        return len(old) == len(new) and all(map(default_is_equal, old, new))
    if isinstance(old, dict):
        return old.keys() == new.keys() and all(
            default_is_equal(value, new[key]) for key, value in old.items()
        )
    return old == new


class ValueStore:
    """Cached value and changed-this-batch flag for every known name."""

    __slots__ = ("values", "changed")

    def __init__(self) -> None:
        self.values: dict[str, object] = {}
        self.changed: dict[str, bool] = {}

    def get(self, name: str, default: object = UNSET) -> object:
        return self.values.get(name, default)

    def args_for(self, names: Iterable[str]) -> list:
        """Cached values in order. Unset names are passed to producers as None."""
        return [self.values.get(name) for name in names]

    def any_changed(self, names: Iterable[str]) -> bool:
        return any(self.changed.get(name, False) for name in names)

    def reset_changed(self) -> None:
        self.changed = {}

    def assign(
        self, name: str, value: object, is_equal: Callable[[object, object], bool]
    ) -> bool:
        """Store value if it differs from the cached one. Returns whether it changed."""
        old = self.values.get(name, UNSET)
        changed = old is not value and (old is UNSET or not is_equal(old, value))
        self.changed[name] = changed
        if changed:
            self.values[name] = value
        return changed

    def snapshot(self) -> dict[str, object]:
        return dict(self.values)
