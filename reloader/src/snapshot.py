from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from hashlib import sha256
from types import MappingProxyType
from typing import Any


class ResourceKind(Enum):
    """Category of externally-managed configuration resource."""

    CONFIG_MAP = "configmap"
    SECRET = "secret"

    @property
    def watch_name(self) -> str:
        return f"{self.value}-watch"


def normalize_data(raw_data: Any) -> dict[str, str]:
    """Coerce resource ``data`` into a stable ``dict[str, str]``.

    Handles ``None`` values (possible when a key exists with no value)
    and non-dict inputs gracefully so that comparison and hashing are
    deterministic.
    """
    if not isinstance(raw_data, Mapping):
        return {}
    return {
        k: ("" if v is None else str(v))
        for k, v in raw_data.items()
        if isinstance(k, str)
    }


@dataclass(frozen=True)
class Snapshot:
    """Immutable key/value view of one resource kind's current configuration.

    Equality only considers ``data``: the kind tag, source name and revision
    are descriptive metadata, so two snapshots read at different revisions
    with identical values compare equal.  Ordering of keys is irrelevant.
    """

    data: Mapping[str, str]
    kind: ResourceKind = field(compare=False)
    source: str = field(default="", compare=False)
    revision: str | None = field(default=None, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "data", MappingProxyType(dict(self.data)))

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Snapshot):
            return NotImplemented
        return dict(self.data) == dict(other.data)

    def __hash__(self) -> int:
        return hash(frozenset(self.data.items()))

    def digest(self) -> str:
        """Return a SHA-256 hex digest of the snapshot's values.

        Used in log lines instead of the values themselves, which may hold
        secret material.
        """
        stable_payload = json.dumps(dict(self.data), sort_keys=True, separators=(",", ":"))
        return sha256(stable_payload.encode("utf-8")).hexdigest()

    def __repr__(self) -> str:
        return (
            f"Snapshot(kind={self.kind.value}, source={self.source!r}, "
            f"keys={len(self.data)}, digest={self.digest()[:12]})"
        )
