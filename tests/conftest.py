import datetime as _dt

import numpy as np
import pytest

from facesearch.db import init_db
from facesearch.jobs import JobStore
from facesearch.persons import BoundingBox, PersonStore
from facesearch.repository import EmbeddingRepository

FACE_DIM = 128
SEMANTIC_DIM = 512


def basis(dim, **components):
    """Vector with the given coordinates set, e.g. ``basis(128, e0=0.8, e1=0.6)``."""
    v = np.zeros(dim, dtype=np.float32)
    for name, value in components.items():
        v[int(name[1:])] = value
    return v


def face_vec(**components):
    return basis(FACE_DIM, **components)


class FakeClock:
    def __init__(self, start=_dt.datetime(2024, 1, 1, 12, 0, 0)):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += _dt.timedelta(**kwargs)


@pytest.fixture
def engine(tmp_path):
    engine = init_db(tmp_path / "facesearch.sqlite")
    yield engine
    engine.dispose()


@pytest.fixture
def repository(engine):
    return EmbeddingRepository(engine)


@pytest.fixture
def persons(engine):
    return PersonStore(engine)


@pytest.fixture
def jobs(engine):
    return JobStore(engine)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def add_face(repository, persons):
    """Register a face record and store its face vector."""
    def _add(face_id, vector, version=1, photo_id=None):
        persons.add_face(face_id, photo_id or f"photo-{face_id}", BoundingBox(0, 0, 10, 10), confidence=0.99)
        repository.put(face_id, "face", vector, version)
        return face_id
    return _add
