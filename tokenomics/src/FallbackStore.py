"""FallbackStore: Durable last-resort snapshot of the emission series.

The store holds a single JSON record::

    {"emissions": [...], "lastUpdated": "...", "lastSynced": "...", "source": "live"}

MetricsService writes it only after a successful live refresh and reads it
only when every live provider and the in-memory cache came up empty.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path

from .errors import ParseError
from .records import EmissionSnapshot

logger = logging.getLogger(__name__)


class FallbackStore(ABC):
    """Abstract key-value cell holding the last known-good snapshot."""

    @abstractmethod
    def read(self) -> EmissionSnapshot | None:
        """Read the stored snapshot.

        :returns: Snapshot, or None if nothing usable is stored.
        """
        pass

    @abstractmethod
    def write(self, snapshot: EmissionSnapshot) -> None:
        """Replace the stored snapshot.

        :param snapshot: Snapshot to persist.
        """
        pass


class JsonFallbackStore(FallbackStore):
    """Fallback store backed by one JSON file.

    Writes go to a temporary file that atomically replaces the target, so a
    crash mid-write never leaves a truncated snapshot.

    :ivar path: Location of the JSON file.
    """

    DEFAULT_PATH = Path("data") / "backup.json"

    def __init__(self, path: str | os.PathLike[str] = DEFAULT_PATH) -> None:
        self.path = Path(path)

    def read(self) -> EmissionSnapshot | None:
        if not self.path.exists():
            logger.info(f"No fallback snapshot at {self.path}")
            return None
        try:
            with open(self.path, "r", encoding="utf-8") as file:
                snapshot = EmissionSnapshot.from_dict(json.load(file))
        except (OSError, json.JSONDecodeError, ParseError) as e:
            logger.error(f"Unreadable fallback snapshot at {self.path}: {e}")
            return None
        if not snapshot.emissions:
            return None
        return snapshot

    def write(self, snapshot: EmissionSnapshot) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(
            dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as file:
                json.dump(snapshot.to_dict(), file, indent=2)
            os.replace(tmp_path, self.path)
        except BaseException:
            Path(tmp_path).unlink(missing_ok=True)
            raise
        logger.info(
            f"Fallback snapshot written to {self.path} "
            f"({len(snapshot.emissions)} records, synced {snapshot.last_synced})"
        )
