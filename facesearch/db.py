"""
Database layer for the facesearch engine.

We keep a SQLite database with a handful of tables: one row per stored
vector, the face detections those vectors belong to, the Person groupings
produced by clustering, and the regeneration jobs (plus their per-entity
error log) that make batch recomputation resumable.

The tables are created automatically if they do not exist when connecting.
All interactions use SQLAlchemy Core.
"""

from __future__ import annotations

import datetime as _dt
from pathlib import Path
from typing import Union

import numpy as np
from sqlalchemy import (
    Table, Column, Integer, String, Float, DateTime, Boolean, LargeBinary, MetaData,
    ForeignKey, PrimaryKeyConstraint, Index, create_engine, event
)
from sqlalchemy.engine import Engine


#: Expected vector length per vector type.
VECTOR_DIMENSIONS = {
    "face": 128,
    "semantic": 512,
}


def _make_metadata() -> MetaData:
    """Define and return SQLAlchemy metadata with our table definitions."""
    metadata = MetaData()
    # One vector per (entity, vector type); writes are upserts
    Table(
        "embeddings", metadata,
        Column("entity_id", String, nullable=False),
        Column("vector_type", String, nullable=False),
        Column("dim", Integer, nullable=False),
        Column("vector", LargeBinary, nullable=False),  # float32 bytes
        Column("version", Integer, nullable=False),
        Column("created_at", DateTime, nullable=False),
        PrimaryKeyConstraint("entity_id", "vector_type"),
        Index("ix_embeddings_type_version", "vector_type", "version"),
    )
    Table(
        "persons", metadata,
        Column("id", Integer, primary_key=True, autoincrement=True),
        Column("label", String, nullable=False),
        Column("sequence", Integer, nullable=True),  # N in "Person N"
        Column("face_count", Integer, nullable=False, default=0),
        Column("is_manual", Boolean, nullable=False, default=False),
        Column("created_at", DateTime, nullable=False),
        Column("updated_at", DateTime, nullable=True),
    )
    # A face has a single person_id column, so it can never be a member of
    # two persons at once.
    Table(
        "faces", metadata,
        Column("id", String, primary_key=True),
        Column("photo_id", String, nullable=False),
        Column("bbox_x", Float, nullable=False),
        Column("bbox_y", Float, nullable=False),
        Column("bbox_width", Float, nullable=False),
        Column("bbox_height", Float, nullable=False),
        Column("confidence", Float, nullable=True),
        Column("person_id", Integer, ForeignKey("persons.id"), nullable=True),
        Column("member_position", Integer, nullable=True),
        Index("ix_faces_person", "person_id"),
    )
    Table(
        "regeneration_jobs", metadata,
        Column("id", Integer, primary_key=True, autoincrement=True),
        Column("vector_type", String, nullable=False),
        Column("target_version", Integer, nullable=False),
        Column("status", String, nullable=False, default="pending"),
        Column("total", Integer, nullable=False, default=0),
        Column("processed", Integer, nullable=False, default=0),
        Column("failed", Integer, nullable=False, default=0),
        Column("last_processed_id", String, nullable=True),
        Column("started_at", DateTime, nullable=True),
        Column("completed_at", DateTime, nullable=True),
        Column("heartbeat", DateTime, nullable=True),
        Column("error_message", String, nullable=True),
    )
    # Highest number handed out per label family, never decremented
    Table(
        "sequences", metadata,
        Column("name", String, primary_key=True),
        Column("value", Integer, nullable=False),
    )
    Table(
        "regeneration_errors", metadata,
        Column("id", Integer, primary_key=True, autoincrement=True),
        Column("job_id", Integer, ForeignKey("regeneration_jobs.id"), nullable=False),
        Column("entity_id", String, nullable=False),
        Column("message", String, nullable=False),
        Column("created_at", DateTime, nullable=False),
    )
    return metadata


METADATA = _make_metadata()
EMBEDDINGS = METADATA.tables["embeddings"]
PERSONS = METADATA.tables["persons"]
FACES = METADATA.tables["faces"]
JOBS = METADATA.tables["regeneration_jobs"]
JOB_ERRORS = METADATA.tables["regeneration_errors"]
SEQUENCES = METADATA.tables["sequences"]


def _enable_foreign_keys(dbapi_conn, _record) -> None:
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def init_db(db_path: Union[Path, str]) -> Engine:
    """Initialize the database and create tables if they do not exist.

    Parameters
    ----------
    db_path: Path or str
        Location of the SQLite database file.  A string starting with
        ``sqlite:`` is taken as a full SQLAlchemy URL.

    Returns
    -------
    sqlalchemy.Engine
        Connected engine instance.
    """
    url = str(db_path)
    if not url.startswith("sqlite:"):
        url = f"sqlite:///{db_path}"
    engine = create_engine(url)
    event.listen(engine, "connect", _enable_foreign_keys)
    METADATA.create_all(engine)
    return engine


def utcnow() -> _dt.datetime:
    """Naive UTC timestamp, the form stored in all DateTime columns."""
    return _dt.datetime.now(_dt.timezone.utc).replace(tzinfo=None)


def vector_to_blob(vector: np.ndarray) -> bytes:
    return np.ascontiguousarray(vector, dtype=np.float32).tobytes()


def blob_to_vector(blob: bytes) -> np.ndarray:
    return np.frombuffer(blob, dtype=np.float32).copy()
