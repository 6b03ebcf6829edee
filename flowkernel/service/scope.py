from __future__ import annotations

from collections.abc import MutableMapping
from typing import Any, Dict, Iterator, Mapping, Optional


class Scope(MutableMapping):
    """Variable scope of one call frame.

    Reads fall through to the parent frame. Writes land in this frame's own
    layer unless the scope is ``shared``, in which case names not bound by
    this frame at creation are written through to the parent. Loop item
    bindings use that to stay private while everything else the loop body
    writes remains visible to the caller.
    """

    def __init__(
        self,
        bindings: Optional[Mapping[str, Any]] = None,
        *,
        parent: Optional["Scope"] = None,
        shared: bool = False,
    ) -> None:
        self._vars: Dict[str, Any] = dict(bindings or {})
        self.parent = parent
        self.shared = shared and parent is not None

    def __getitem__(self, key: str) -> Any:
        if key in self._vars:
            return self._vars[key]
        if self.parent is not None:
            return self.parent[key]
        raise KeyError(key)

    def __setitem__(self, key: str, value: Any) -> None:
        if self.shared and key not in self._vars:
            self.parent[key] = value
        else:
            self._vars[key] = value

    def __delitem__(self, key: str) -> None:
        if key in self._vars:
            del self._vars[key]
        elif self.shared:
            del self.parent[key]
        else:
            raise KeyError(key)

    def __contains__(self, key: object) -> bool:
        if key in self._vars:
            return True
        return self.parent is not None and key in self.parent

    def __iter__(self) -> Iterator[str]:
        seen = set()
        for key in self._vars:
            seen.add(key)
            yield key
        if self.parent is not None:
            for key in self.parent:
                if key not in seen:
                    yield key

    def __len__(self) -> int:
        return sum(1 for _ in self)

    def set_local(self, key: str, value: Any) -> None:
        """Bind ``key`` in this frame's own layer, shadowing the parent."""
        self._vars[key] = value

    def local_snapshot(self) -> Dict[str, Any]:
        return dict(self._vars)

    def snapshot(self) -> Dict[str, Any]:
        """Flattened view: parent bindings overlaid with this frame's."""
        merged = self.parent.snapshot() if self.parent is not None else {}
        merged.update(self._vars)
        return merged

    def __repr__(self) -> str:
        return f"Scope({self._vars!r}, shared={self.shared}, parent={'yes' if self.parent else 'no'})"
