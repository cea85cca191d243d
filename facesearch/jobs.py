"""
Persistence of regeneration jobs.

A :class:`RegenerationJob` row is the checkpoint of the batch regeneration
pipeline: after every committed batch the pipeline writes the last entity id
it handled, the running counters and a heartbeat timestamp in a single
transaction.  On restart the latest job tells the pipeline where to continue.
"""

from __future__ import annotations

import datetime as _dt
import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from sqlalchemy import insert, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from .db import JOB_ERRORS, JOBS, utcnow
from .errors import JobAlreadyRunning, NotFound, RepositoryUnavailable

logger = logging.getLogger(__name__)

PENDING = "pending"
RUNNING = "running"
PAUSED = "paused"
COMPLETED = "completed"
FAILED = "failed"
CANCELLED = "cancelled"

ACTIVE_STATUSES = (PENDING, RUNNING)
TERMINAL_STATUSES = (COMPLETED, FAILED, CANCELLED)


@dataclass
class RegenerationJob:
    id: int
    vector_type: str
    target_version: int
    status: str
    total: int = 0
    processed: int = 0
    failed: int = 0
    last_processed_id: Optional[str] = None
    started_at: Optional[_dt.datetime] = None
    completed_at: Optional[_dt.datetime] = None
    heartbeat: Optional[_dt.datetime] = None
    error_message: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


def _row_to_job(row) -> RegenerationJob:
    return RegenerationJob(**{c: row[c] for c in (
        "id", "vector_type", "target_version", "status", "total", "processed", "failed",
        "last_processed_id", "started_at", "completed_at", "heartbeat", "error_message",
    )})


class JobStore:
    """Transactional access to the ``regeneration_jobs`` table."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def create(self, vector_type: str, target_version: int, total: int = 0) -> RegenerationJob:
        """Insert a new ``pending`` job.

        A ``paused`` job is cancelled to make room for the new one.

        Raises
        ------
        JobAlreadyRunning
            If a job is already ``pending`` or ``running``.
        """
        try:
            with self.engine.begin() as conn:
                active = conn.execute(
                    select(JOBS.c.id, JOBS.c.status).where(JOBS.c.status.in_(ACTIVE_STATUSES + (PAUSED,)))
                ).all()
                for job_id, status in active:
                    if status in ACTIVE_STATUSES:
                        raise JobAlreadyRunning(f"regeneration job {job_id} is {status}")
                for job_id, _status in active:
                    conn.execute(update(JOBS).where(JOBS.c.id == job_id)
                                 .values(status=CANCELLED, completed_at=utcnow()))
                    logger.info("Cancelled paused job %d in favour of a new one", job_id)
                result = conn.execute(insert(JOBS).values(
                    vector_type=vector_type,
                    target_version=int(target_version),
                    status=PENDING,
                    total=total,
                    processed=0,
                    failed=0,
                ))
                job_id = int(result.inserted_primary_key[0])
        except SQLAlchemyError as exc:
            raise RepositoryUnavailable(f"could not create job: {exc}") from exc
        return self.get(job_id)

    def get(self, job_id: int) -> RegenerationJob:
        try:
            with self.engine.connect() as conn:
                row = conn.execute(select(JOBS).where(JOBS.c.id == job_id)).mappings().first()
        except SQLAlchemyError as exc:
            raise RepositoryUnavailable(str(exc)) from exc
        if row is None:
            raise NotFound(f"regeneration job {job_id} does not exist")
        return _row_to_job(row)

    def latest(self, vector_type: Optional[str] = None) -> Optional[RegenerationJob]:
        query = select(JOBS)
        if vector_type is not None:
            query = query.where(JOBS.c.vector_type == vector_type)
        try:
            with self.engine.connect() as conn:
                row = conn.execute(query.order_by(JOBS.c.id.desc()).limit(1)).mappings().first()
        except SQLAlchemyError as exc:
            raise RepositoryUnavailable(str(exc)) from exc
        return _row_to_job(row) if row else None

    def list(self, status: Optional[str] = None) -> List[RegenerationJob]:
        query = select(JOBS)
        if status:
            query = query.where(JOBS.c.status == status)
        try:
            with self.engine.connect() as conn:
                rows = conn.execute(query.order_by(JOBS.c.id.desc())).mappings().all()
        except SQLAlchemyError as exc:
            raise RepositoryUnavailable(str(exc)) from exc
        return [_row_to_job(r) for r in rows]

    def update(self, job_id: int, **values) -> None:
        """Write the given columns of one job in a single transaction."""
        try:
            with self.engine.begin() as conn:
                conn.execute(update(JOBS).where(JOBS.c.id == job_id).values(**values))
        except SQLAlchemyError as exc:
            raise RepositoryUnavailable(f"could not update job {job_id}: {exc}") from exc

    def checkpoint(self, job_id: int, last_processed_id: Optional[str], processed: int, failed: int,
                   errors: Sequence[Tuple[str, str]] = (),
                   heartbeat: Optional[_dt.datetime] = None) -> None:
        """Persist progress after a batch, together with its per-entity errors."""
        now = heartbeat or utcnow()
        try:
            with self.engine.begin() as conn:
                conn.execute(update(JOBS).where(JOBS.c.id == job_id).values(
                    last_processed_id=last_processed_id,
                    processed=processed,
                    failed=failed,
                    heartbeat=now,
                ))
                if errors:
                    conn.execute(insert(JOB_ERRORS), [
                        {"job_id": job_id, "entity_id": entity_id, "message": message, "created_at": now}
                        for entity_id, message in errors
                    ])
        except SQLAlchemyError as exc:
            raise RepositoryUnavailable(f"could not checkpoint job {job_id}: {exc}") from exc

    def errors(self, job_id: int) -> List[Tuple[str, str]]:
        try:
            with self.engine.connect() as conn:
                rows = conn.execute(
                    select(JOB_ERRORS.c.entity_id, JOB_ERRORS.c.message)
                    .where(JOB_ERRORS.c.job_id == job_id).order_by(JOB_ERRORS.c.id)
                ).all()
        except SQLAlchemyError as exc:
            raise RepositoryUnavailable(str(exc)) from exc
        return [(r.entity_id, r.message) for r in rows]
