"""
Versioned storage of per-entity embedding vectors.

Each entity (a face, a photo) owns at most one vector per vector type.
Writes are upserts keyed by ``(entity_id, vector_type)`` and carry an integer
version identifying the model generation that produced the vector.  Version
filtered, ascending-id cursor pagination drives the resumable regeneration
pipeline; :meth:`EmbeddingRepository.snapshot` hands clustering and quality
passes a consistent matrix of vectors.
"""

from __future__ import annotations

import datetime as _dt
import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import numpy as np
from sqlalchemy import and_, delete, func, select
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from .db import EMBEDDINGS, VECTOR_DIMENSIONS, blob_to_vector, utcnow, vector_to_blob
from .errors import InvalidDimension, NotFound, RepositoryUnavailable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EmbeddingRecord:
    entity_id: str
    vector_type: str
    vector: np.ndarray
    version: int
    created_at: _dt.datetime


@dataclass(frozen=True)
class VersionFilter:
    """Restricts a query to vectors whose version compares to ``value``.

    ``op`` is one of ``"eq"``, ``"lt"``, ``"ge"`` or ``"any"``.
    """
    op: str = "any"
    value: Optional[int] = None

    @classmethod
    def equal(cls, version: int) -> "VersionFilter":
        return cls("eq", version)

    @classmethod
    def older_than(cls, version: int) -> "VersionFilter":
        return cls("lt", version)

    @classmethod
    def at_least(cls, version: int) -> "VersionFilter":
        return cls("ge", version)

    def clause(self):
        column = EMBEDDINGS.c.version
        if self.op == "any":
            return None
        if self.value is None:
            raise ValueError(f"version filter {self.op!r} needs a value")
        if self.op == "eq":
            return column == self.value
        if self.op == "lt":
            return column < self.value
        if self.op == "ge":
            return column >= self.value
        raise ValueError(f"unknown version filter {self.op!r}")


ANY_VERSION = VersionFilter()


@dataclass(frozen=True)
class Page:
    """One page of a cursor traversal ordered by ascending entity id."""
    records: List[EmbeddingRecord]
    next_cursor: Optional[str]

    def __len__(self) -> int:
        return len(self.records)


def expected_dimension(vector_type: str) -> int:
    try:
        return VECTOR_DIMENSIONS[vector_type]
    except KeyError:
        raise ValueError(f"unknown vector type {vector_type!r}") from None


def _row_to_record(row) -> EmbeddingRecord:
    return EmbeddingRecord(
        entity_id=row["entity_id"],
        vector_type=row["vector_type"],
        vector=blob_to_vector(row["vector"]),
        version=int(row["version"]),
        created_at=row["created_at"],
    )


class EmbeddingRepository:
    """Upsert/get/paginate access to the ``embeddings`` table.

    Parameters
    ----------
    engine: sqlalchemy.Engine
        Engine returned by :func:`facesearch.db.init_db`.
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def _where(self, vector_type: str, version_filter: VersionFilter):
        conditions = [EMBEDDINGS.c.vector_type == vector_type]
        clause = version_filter.clause()
        if clause is not None:
            conditions.append(clause)
        return and_(*conditions)

    def put(self, entity_id: str, vector_type: str, vector: Sequence[float], version: int) -> bool:
        """Store ``vector`` for an entity, replacing any previous one.

        Returns ``True`` when the stored record changed and ``False`` when an
        identical vector with the same version was already present.

        Raises
        ------
        InvalidDimension
            If the vector length does not match the vector type.
        RepositoryUnavailable
            If the store rejects the write.
        """
        expected = expected_dimension(vector_type)
        arr = np.asarray(vector, dtype=np.float32).ravel()
        if arr.shape[0] != expected:
            raise InvalidDimension(vector_type, expected, int(arr.shape[0]))
        blob = vector_to_blob(arr)
        try:
            with self.engine.begin() as conn:
                existing = conn.execute(
                    select(EMBEDDINGS.c.vector, EMBEDDINGS.c.version).where(
                        and_(EMBEDDINGS.c.entity_id == entity_id,
                             EMBEDDINGS.c.vector_type == vector_type)
                    )
                ).first()
                if existing is not None and existing.version == version and existing.vector == blob:
                    return False
                stmt = sqlite_insert(EMBEDDINGS).values(
                    entity_id=entity_id,
                    vector_type=vector_type,
                    dim=expected,
                    vector=blob,
                    version=int(version),
                    created_at=utcnow(),
                )
                stmt = stmt.on_conflict_do_update(
                    index_elements=[EMBEDDINGS.c.entity_id, EMBEDDINGS.c.vector_type],
                    set_={
                        "dim": stmt.excluded.dim,
                        "vector": stmt.excluded.vector,
                        "version": stmt.excluded.version,
                        "created_at": stmt.excluded.created_at,
                    },
                )
                conn.execute(stmt)
        except SQLAlchemyError as exc:
            raise RepositoryUnavailable(f"could not store {vector_type} vector for {entity_id}: {exc}") from exc
        return True

    def get_record(self, entity_id: str, vector_type: str) -> EmbeddingRecord:
        try:
            with self.engine.connect() as conn:
                row = conn.execute(
                    select(EMBEDDINGS).where(
                        and_(EMBEDDINGS.c.entity_id == entity_id,
                             EMBEDDINGS.c.vector_type == vector_type)
                    )
                ).mappings().first()
        except SQLAlchemyError as exc:
            raise RepositoryUnavailable(str(exc)) from exc
        if row is None:
            raise NotFound(f"no {vector_type} vector for entity {entity_id}")
        return _row_to_record(row)

    def get(self, entity_id: str, vector_type: str) -> np.ndarray:
        """Return the stored vector or raise :class:`NotFound`."""
        return self.get_record(entity_id, vector_type).vector

    def list_by_version(self, vector_type: str, version_filter: VersionFilter = ANY_VERSION,
                        limit: int = 50, after_id: Optional[str] = None) -> Page:
        """Return up to ``limit`` records with ``entity_id > after_id``.

        Records are ordered by ascending entity id so that a traversal can be
        resumed from the last id it saw.
        """
        if limit <= 0:
            raise ValueError("limit must be positive")
        query = select(EMBEDDINGS).where(self._where(vector_type, version_filter))
        if after_id is not None:
            query = query.where(EMBEDDINGS.c.entity_id > after_id)
        query = query.order_by(EMBEDDINGS.c.entity_id).limit(limit)
        try:
            with self.engine.connect() as conn:
                rows = conn.execute(query).mappings().all()
        except SQLAlchemyError as exc:
            raise RepositoryUnavailable(str(exc)) from exc
        records = [_row_to_record(r) for r in rows]
        next_cursor = records[-1].entity_id if len(records) == limit else None
        return Page(records=records, next_cursor=next_cursor)

    def count(self, vector_type: str, version_filter: VersionFilter = ANY_VERSION) -> int:
        query = select(func.count()).select_from(EMBEDDINGS).where(self._where(vector_type, version_filter))
        try:
            with self.engine.connect() as conn:
                return int(conn.execute(query).scalar_one())
        except SQLAlchemyError as exc:
            raise RepositoryUnavailable(str(exc)) from exc

    def snapshot(self, vector_type: str, version_filter: VersionFilter = ANY_VERSION,
                 entity_ids: Optional[Sequence[str]] = None) -> Tuple[List[str], np.ndarray]:
        """Read all matching vectors in a single transaction.

        Returns
        -------
        (list of str, ndarray of shape (n, dim))
            Entity ids in ascending order and the corresponding vectors.
        """
        dim = expected_dimension(vector_type)
        query = select(EMBEDDINGS.c.entity_id, EMBEDDINGS.c.vector).where(
            self._where(vector_type, version_filter)
        )
        if entity_ids is not None:
            query = query.where(EMBEDDINGS.c.entity_id.in_(list(entity_ids)))
        query = query.order_by(EMBEDDINGS.c.entity_id)
        try:
            with self.engine.begin() as conn:
                rows = conn.execute(query).all()
        except SQLAlchemyError as exc:
            raise RepositoryUnavailable(str(exc)) from exc
        ids = [r.entity_id for r in rows]
        if not rows:
            return ids, np.zeros((0, dim), dtype=np.float32)
        matrix = np.vstack([blob_to_vector(r.vector) for r in rows])
        return ids, matrix

    def delete(self, entity_id: str, vector_type: Optional[str] = None) -> int:
        """Remove an entity's vectors (all types unless ``vector_type`` given)."""
        stmt = delete(EMBEDDINGS).where(EMBEDDINGS.c.entity_id == entity_id)
        if vector_type is not None:
            stmt = stmt.where(EMBEDDINGS.c.vector_type == vector_type)
        try:
            with self.engine.begin() as conn:
                deleted = conn.execute(stmt).rowcount
        except SQLAlchemyError as exc:
            raise RepositoryUnavailable(str(exc)) from exc
        if deleted:
            logger.debug("Deleted %d vector(s) of entity %s", deleted, entity_id)
        return deleted
