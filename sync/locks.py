"""
Operator field locks.

A record's `lockedFields` lists field paths exempt from automatic writes.
Two stored shapes are accepted:

    ["posterURL", "captionURLs.French"]
    {"posterURL": true, "captionURLs": {"French": true}}

A path is locked if it or any of its ancestors is locked, so locking
"videoInfoSource" also locks "videoInfoSource.duration".
"""

from typing import Any, Iterable


def _flatten(tree: dict, prefix: str = '') -> Iterable[str]:
    for name, value in tree.items():
        path = f"{prefix}{name}"
        if value is True:
            yield path
        elif isinstance(value, dict):
            yield from _flatten(value, f"{path}.")


class LockSet:
    """Immutable set of locked field paths with ancestor matching."""

    def __init__(self, paths: Iterable[str] = ()):
        self._paths = frozenset(p for p in paths if p)

    @classmethod
    def from_record(cls, record: dict[str, Any] | None) -> 'LockSet':
        raw = (record or {}).get('lockedFields')
        if not raw:
            return cls()
        if isinstance(raw, dict):
            return cls(_flatten(raw))
        if isinstance(raw, (list, tuple, set, frozenset)):
            return cls(str(p) for p in raw)
        return cls()

    def is_locked(self, path: str) -> bool:
        parts = path.split('.')
        return any('.'.join(parts[:i]) in self._paths for i in range(1, len(parts) + 1))

    def __bool__(self) -> bool:
        return bool(self._paths)

    def __contains__(self, path: str) -> bool:
        return self.is_locked(path)

    def __repr__(self) -> str:
        return f"LockSet({sorted(self._paths)!r})"
