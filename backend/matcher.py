"""
Descriptor distance and nearest-neighbour matching.
"""
from dataclasses import dataclass
from typing import Collection, Optional, Tuple

import numpy as np

from descriptor_store import DescriptorStore, Identity, Snapshot


class DimensionMismatch(ValueError):
    """Two descriptors of different length were compared."""


def euclidean_distance(a, b) -> float:
    """
    Euclidean distance between two descriptors.

    Raises:
        DimensionMismatch: if the descriptors differ in length
    """
    a = np.asarray(a, dtype=np.float64).ravel()
    b = np.asarray(b, dtype=np.float64).ravel()
    if a.shape != b.shape:
        raise DimensionMismatch(f"Descriptor length {a.shape[0]} != {b.shape[0]}")
    return float(np.sqrt(np.sum((a - b) ** 2)))


def validate_descriptor(vector, dimension: Optional[int]) -> np.ndarray:
    """Coerce to a flat float32 vector and check its length."""
    arr = np.asarray(vector, dtype=np.float32).ravel()
    if dimension is not None and arr.shape[0] != dimension:
        raise DimensionMismatch(f"Expected descriptor of length {dimension}, got {arr.shape[0]}")
    return arr


@dataclass(frozen=True)
class MatchResult:
    identity: Optional[Identity]
    distance: float

    @property
    def is_match(self) -> bool:
        return self.identity is not None


UNKNOWN = MatchResult(identity=None, distance=float("inf"))


def closest(query, snapshot: Snapshot, exclude: Collection[int] = ()) -> Optional[Tuple[Identity, float]]:
    """
    Closest identity in a snapshot, by each identity's nearest descriptor.

    Ties keep the identity enrolled first.
    """
    best = None
    best_distance = float("inf")
    for identity, vectors in snapshot:
        if identity.id in exclude or not vectors:
            continue
        distance = min(euclidean_distance(query, v) for v in vectors)
        if distance < best_distance:
            best, best_distance = identity, distance
    if best is None:
        return None
    return best, best_distance


class Matcher:
    """Nearest-neighbour classifier over a DescriptorStore."""

    def __init__(self, store: DescriptorStore):
        self.store = store

    def best(self, query, exclude: Collection[int] = ()) -> Optional[Tuple[Identity, float]]:
        """Closest identity regardless of threshold, or None when nothing is enrolled."""
        return closest(query, self.store.snapshot(), exclude)

    def match(self, query, threshold: float, exclude: Collection[int] = ()) -> MatchResult:
        """
        Classify a descriptor against the enrolled identities.

        Args:
            query: Descriptor to classify
            threshold: Accept only distances strictly below this
            exclude: Identity ids to skip

        Returns:
            MatchResult with the identity, or UNKNOWN
        """
        found = self.best(query, exclude)
        if found is None:
            return UNKNOWN
        identity, distance = found
        if distance < threshold:
            return MatchResult(identity=identity, distance=distance)
        return UNKNOWN
