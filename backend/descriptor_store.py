"""
In-memory cache of enrolled identities and their face descriptors.
"""
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Sequence, Tuple

import numpy as np

logger = logging.getLogger(__name__)


class SourceUnavailable(Exception):
    """The record store could not be read. The previous cache is still valid."""


@dataclass(frozen=True)
class Identity:
    """An enrolled person as seen by the matching core."""
    id: int
    student_id: str
    name: str
    major: Optional[str] = None


Entry = Tuple[Identity, Tuple[np.ndarray, ...]]
Snapshot = Tuple[Entry, ...]


def _freeze(vectors: Sequence) -> Tuple[np.ndarray, ...]:
    frozen = []
    for vector in vectors:
        arr = np.array(vector, dtype=np.float32).ravel()
        arr.setflags(write=False)
        frozen.append(arr)
    return tuple(frozen)


class DescriptorStore:
    """
    Holds one immutable snapshot of (Identity, descriptors) pairs.

    The snapshot is rebuilt wholesale by refresh() and replaced with a single
    reference swap, so a reader holding a snapshot never sees a partial refresh.
    """

    def __init__(self, source):
        """
        Args:
            source: Object exposing select_identities() -> [(Identity, [vector, ...])]
        """
        self.source = source
        self._snapshot: Snapshot = ()
        self._refreshed_at: Optional[datetime] = None
        self.lock = threading.Lock()

    def refresh(self) -> int:
        """
        Reload every identity from the record store.

        Returns:
            Number of identities in the new snapshot

        Raises:
            SourceUnavailable: fetch failed, the old snapshot is kept
        """
        try:
            rows = self.source.select_identities()
        except SourceUnavailable:
            logger.warning("Descriptor refresh failed, keeping %d cached identities", len(self._snapshot))
            raise
        except Exception as e:
            logger.warning("Descriptor refresh failed, keeping %d cached identities", len(self._snapshot))
            raise SourceUnavailable(str(e)) from e

        snapshot = tuple((identity, _freeze(vectors)) for identity, vectors in rows)

        with self.lock:
            self._snapshot = snapshot
            self._refreshed_at = datetime.now(timezone.utc)

        logger.info("Descriptor cache refreshed: %d identities", len(snapshot))
        return len(snapshot)

    def all(self) -> Snapshot:
        """Current snapshot, in enrollment order. Never touches the record store."""
        with self.lock:
            return self._snapshot

    snapshot = all

    @property
    def refreshed_at(self) -> Optional[datetime]:
        return self._refreshed_at

    @property
    def dimension(self) -> Optional[int]:
        for _, vectors in self.all():
            if vectors:
                return int(vectors[0].shape[0])
        return None

    def __len__(self) -> int:
        return len(self.all())
