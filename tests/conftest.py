"""Shared fixtures: in-memory record store, fake sources and a fake detector."""

import numpy as np
import pytest

from database import RecordStore
from descriptor_store import Identity


def vec(*values):
    return np.array(values, dtype=np.float32)


class FakeSource:
    """Stands in for the record store's select_identities()."""

    def __init__(self, rows=None):
        self.rows = list(rows or [])
        self.error = None
        self.calls = 0

    def select_identities(self):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return list(self.rows)


class FakeDetector:
    """Maps the uniform pixel value of a test image to a descriptor."""

    def __init__(self, faces=None):
        self.faces = dict(faces or {})

    def detect(self, image):
        return self.faces.get(int(round(float(image.mean()))))


@pytest.fixture
def alice():
    return Identity(id=1, student_id="S001", name="Alice", major="Physics")


@pytest.fixture
def bob():
    return Identity(id=2, student_id="S002", name="Bob", major="History")


@pytest.fixture
def record_store():
    store = RecordStore("sqlite://")
    store.init_db()
    yield store
    store.engine.dispose()
