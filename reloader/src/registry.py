from __future__ import annotations

import logging
import threading

from reloader.src.snapshot import ResourceKind, Snapshot


class ActiveConfigurationRegistry:
    """Holds the snapshot currently adopted into live configuration, per kind.

    A single instance is shared by every watch stream.  Reads and writes go
    through an internal lock so a reload installing a snapshot never races a
    comparison reading the previous one.
    """

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self.logger = logger or logging.getLogger(__name__)
        self._lock = threading.Lock()
        self._installed: dict[ResourceKind, Snapshot] = {}

    def get(self, kind: ResourceKind) -> Snapshot | None:
        with self._lock:
            return self._installed.get(kind)

    def install(self, kind: ResourceKind, snapshot: Snapshot) -> None:
        """Replace the installed snapshot for *kind*."""
        with self._lock:
            previous = self._installed.get(kind)
            self._installed[kind] = snapshot
        self.logger.info(
            "Installed %s snapshot %s (previous digest %s)",
            kind.value,
            snapshot.digest()[:12],
            previous.digest()[:12] if previous is not None else "none",
        )
