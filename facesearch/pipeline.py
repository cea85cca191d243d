"""
Resumable, checkpointed regeneration of stored vectors.

When the model behind a vector type changes, every stored vector older than
the new version has to be recomputed.  :class:`BatchRegenerationPipeline`
walks those vectors in ascending entity id order, one batch at a time, asks
an external embedding provider for a fresh vector, upserts it through the
repository and then checkpoints the job row.  A crash loses at most the
batch in flight; because writes are idempotent upserts, redoing part of a
batch never corrupts state.

Job states::

    pending -> running -> (paused) -> completed | failed | cancelled

Progress is reported as an iterator of :class:`ProgressEvent` values
(:meth:`BatchRegenerationPipeline.run`); control returns to the caller after
every batch, which is also the only point where pause and cancel requests
are observed.
"""

from __future__ import annotations

import concurrent.futures
import datetime as _dt
import logging
import time
from dataclasses import dataclass
from typing import Callable, Iterator, List, Optional, Protocol, Sequence, Tuple

from .clustering import ClusterResult, ClusteringEngine
from .db import utcnow
from .errors import (
    FaceSearchError, InvalidDimension, NotFound, ProviderFailure, ProviderTimeout,
    RepositoryUnavailable, StaleJob,
)
from .jobs import (
    CANCELLED, COMPLETED, FAILED, PAUSED, PENDING, RUNNING, JobStore, RegenerationJob,
)
from .repository import EmbeddingRepository, VersionFilter

logger = logging.getLogger(__name__)


class EmbeddingProvider(Protocol):
    """Anything that can compute a fresh vector for an entity."""

    def vector(self, entity_id: str) -> Sequence[float]:
        ...


@dataclass(frozen=True)
class ProgressEvent:
    job_id: int
    status: str
    processed: int
    total: int
    failed: int
    current_entity_id: Optional[str] = None

    @property
    def done(self) -> bool:
        return self.status not in (PENDING, RUNNING)


class BatchRegenerationPipeline:
    """Recompute every vector of ``vector_type`` older than ``target_version``.

    Parameters
    ----------
    repository: EmbeddingRepository
        Where vectors are read from and written to.
    jobs: JobStore
        Persistence of the job row / checkpoint.
    provider: EmbeddingProvider
        External source of fresh vectors.
    vector_type: str
        ``"face"`` or ``"semantic"``.
    target_version: int
        Version stamped on regenerated vectors.
    batch_size: int
        Entities per batch (and per checkpoint).
    stale_after: timedelta
        A running job whose heartbeat is older than this cannot be resumed.
    provider_timeout: float, optional
        Seconds to wait for a single provider call; ``None`` waits forever.
    clustering: ClusteringEngine, optional
        Run once over the target version when a ``face`` job completes.
    batch_pause: float
        Seconds to sleep between batches in :meth:`run`.
    clock: callable
        Returns the current naive UTC datetime; injectable for tests.
    """

    def __init__(self, repository: EmbeddingRepository, jobs: JobStore, provider: EmbeddingProvider,
                 vector_type: str = "face", target_version: int = 2, batch_size: int = 50,
                 stale_after: _dt.timedelta = _dt.timedelta(minutes=5),
                 provider_timeout: Optional[float] = None,
                 clustering: Optional[ClusteringEngine] = None,
                 batch_pause: float = 0.0,
                 clock: Callable[[], _dt.datetime] = utcnow) -> None:
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        self.repository = repository
        self.jobs = jobs
        self.provider = provider
        self.vector_type = vector_type
        self.target_version = target_version
        self.batch_size = batch_size
        self.stale_after = stale_after
        self.provider_timeout = provider_timeout
        self.clustering = clustering
        self.batch_pause = batch_pause
        self.clock = clock
        self.job: Optional[RegenerationJob] = None
        self.cluster_result: Optional[ClusterResult] = None
        self._executor: Optional[concurrent.futures.ThreadPoolExecutor] = None
        self._pause_requested = False
        self._cancel_requested = False

    # -- lifecycle --

    def _pending_filter(self) -> VersionFilter:
        return VersionFilter.older_than(self.target_version)

    def start(self) -> RegenerationJob:
        """Create a new job and mark it running.

        Raises
        ------
        JobAlreadyRunning
            If another job is pending or running.
        """
        total = self.repository.count(self.vector_type, self._pending_filter())
        job = self.jobs.create(self.vector_type, self.target_version, total=total)
        now = self.clock()
        self.jobs.update(job.id, status=RUNNING, started_at=now, heartbeat=now)
        self.job = self.jobs.get(job.id)
        self._pause_requested = self._cancel_requested = False
        logger.info("Started regeneration job %d: %d %s vector(s) below version %d",
                    job.id, total, self.vector_type, self.target_version)
        return self.job

    def resume(self, job_id: Optional[int] = None) -> RegenerationJob:
        """Continue the given job, or the latest one for this vector type.

        A paused job always resumes.  A pending or running job resumes only
        if its heartbeat is within ``stale_after``; otherwise it is marked
        failed and :class:`StaleJob` is raised.
        """
        job = self.jobs.get(job_id) if job_id is not None else self.jobs.latest(self.vector_type)
        if job is None:
            raise NotFound(f"no {self.vector_type} regeneration job to resume")
        if job.is_terminal:
            raise NotFound(f"regeneration job {job.id} is {job.status} and cannot be resumed")
        now = self.clock()
        if job.status != PAUSED and (job.heartbeat is None or now - job.heartbeat > self.stale_after):
            message = f"heartbeat {job.heartbeat} older than {self.stale_after}"
            self.jobs.update(job.id, status=FAILED, completed_at=now, error_message=message)
            logger.warning("Regeneration job %d is stale (%s); marked failed", job.id, message)
            raise StaleJob(f"regeneration job {job.id} is stale: {message}")
        self.vector_type = job.vector_type
        self.target_version = job.target_version
        # entities upgraded by an uncommitted batch no longer match the
        # version filter; count them as processed
        remaining = self.repository.count(self.vector_type, self._pending_filter()) \
            if job.last_processed_id is None else self._remaining_after(job.last_processed_id)
        processed = min(job.total, max(job.processed, job.total - remaining))
        self.jobs.update(job.id, status=RUNNING, heartbeat=now, processed=processed,
                         started_at=job.started_at or now)
        self.job = self.jobs.get(job.id)
        self._pause_requested = self._cancel_requested = False
        logger.info("Resuming regeneration job %d after %s (%d/%d processed)",
                    job.id, job.last_processed_id, processed, job.total)
        return self.job

    def _remaining_after(self, entity_id: str) -> int:
        count = 0
        cursor = entity_id
        while True:
            page = self.repository.list_by_version(self.vector_type, self._pending_filter(),
                                                   limit=500, after_id=cursor)
            count += len(page)
            if page.next_cursor is None:
                return count
            cursor = page.next_cursor

    def pause(self) -> None:
        """Request a pause; honoured at the next batch boundary."""
        self._pause_requested = True

    def cancel(self) -> None:
        """Request cancellation; honoured at the next batch boundary.

        A job that is not currently being driven by :meth:`run` (e.g. paused)
        is cancelled immediately.
        """
        self._cancel_requested = True
        job = self.job
        if job is not None and job.status == PAUSED:
            self._finish(CANCELLED)

    # -- processing --

    def _fetch(self, entity_id: str) -> Sequence[float]:
        if self.provider_timeout is None:
            try:
                return self.provider.vector(entity_id)
            except (ProviderTimeout, ProviderFailure):
                raise
            except TimeoutError as exc:
                raise ProviderTimeout(f"provider timed out for {entity_id}") from exc
            except Exception as exc:
                raise ProviderFailure(f"provider failed for {entity_id}: {exc}") from exc
        if self._executor is None:
            self._executor = concurrent.futures.ThreadPoolExecutor(max_workers=1)
        future = self._executor.submit(self.provider.vector, entity_id)
        try:
            return future.result(timeout=self.provider_timeout)
        except concurrent.futures.TimeoutError as exc:
            # the stuck call keeps its worker; later calls get a fresh one
            self._executor.shutdown(wait=False)
            self._executor = None
            raise ProviderTimeout(
                f"provider did not answer for {entity_id} within {self.provider_timeout}s"
            ) from exc
        except (ProviderTimeout, ProviderFailure):
            raise
        except Exception as exc:
            raise ProviderFailure(f"provider failed for {entity_id}: {exc}") from exc

    def _event(self, current_entity_id: Optional[str] = None) -> ProgressEvent:
        job = self.job
        return ProgressEvent(
            job_id=job.id,
            status=job.status,
            processed=job.processed,
            total=job.total,
            failed=job.failed,
            current_entity_id=current_entity_id,
        )

    def _finish(self, status: str, error_message: Optional[str] = None) -> None:
        now = self.clock()
        self.jobs.update(self.job.id, status=status, completed_at=now, heartbeat=now,
                         error_message=error_message)
        self.job = self.jobs.get(self.job.id)
        logger.info("Regeneration job %d %s (%d processed, %d failed)",
                    self.job.id, status, self.job.processed, self.job.failed)

    def _abort(self, exc: RepositoryUnavailable) -> None:
        logger.error("Regeneration job %d aborted: %s", self.job.id, exc)
        self.job.status = FAILED
        self.job.error_message = str(exc)
        try:
            self._finish(FAILED, error_message=str(exc))
        except RepositoryUnavailable:
            logger.exception("Could not record failure of job %d", self.job.id)

    def process_batch(self, batch_size: Optional[int] = None) -> ProgressEvent:
        """Regenerate the next batch and checkpoint it.

        When no entity is left the job is completed (and a clustering pass
        runs for face vectors).

        Raises
        ------
        RepositoryUnavailable
            The store failed; the job has been marked failed.
        """
        if self.job is None or self.job.status != RUNNING:
            raise FaceSearchError("process_batch() needs a running job; call start() or resume()")
        limit = batch_size or self.batch_size
        job = self.job
        try:
            page = self.repository.list_by_version(self.vector_type, self._pending_filter(),
                                                   limit=limit, after_id=job.last_processed_id)
        except RepositoryUnavailable as exc:
            self._abort(exc)
            raise
        if not page.records:
            self._complete()
            return self._event()
        try:
            errors: List[Tuple[str, str]] = []
            for record in page.records:
                entity_id = record.entity_id
                try:
                    vector = self._fetch(entity_id)
                    self.repository.put(entity_id, self.vector_type, vector, self.target_version)
                except (ProviderTimeout, ProviderFailure, InvalidDimension) as exc:
                    logger.warning("Could not regenerate %s vector for %s: %s",
                                   self.vector_type, entity_id, exc, exc_info=True)
                    errors.append((entity_id, str(exc)))
            last_id = page.records[-1].entity_id
            processed = job.processed + len(page.records)
            failed = job.failed + len(errors)
            now = self.clock()
            self.jobs.checkpoint(job.id, last_id, processed, failed, errors, heartbeat=now)
        except RepositoryUnavailable as exc:
            self._abort(exc)
            raise
        job.last_processed_id = last_id
        job.processed = processed
        job.failed = failed
        job.heartbeat = now
        logger.info("Job %d: %d/%d processed (%d failed)", job.id, processed, job.total, failed)
        return self._event(current_entity_id=last_id)

    def _complete(self) -> None:
        self._finish(COMPLETED)
        if self.clustering is not None and self.vector_type == "face":
            logger.info("Re-clustering faces at version %d", self.target_version)
            self.cluster_result = self.clustering.run(VersionFilter.equal(self.target_version))

    def run(self) -> Iterator[ProgressEvent]:
        """Process batches until the job ends, yielding one event per batch.

        Starts a new job if none has been started or resumed.  The last event
        carries the terminal (or paused) status.
        """
        if self.job is None:
            self.start()
        try:
            while True:
                if self._cancel_requested:
                    self._finish(CANCELLED)
                    yield self._event()
                    return
                if self._pause_requested:
                    self.jobs.update(self.job.id, status=PAUSED, heartbeat=self.clock())
                    self.job = self.jobs.get(self.job.id)
                    logger.info("Regeneration job %d paused at %s", self.job.id, self.job.last_processed_id)
                    yield self._event()
                    return
                try:
                    event = self.process_batch()
                except RepositoryUnavailable:
                    yield self._event()
                    return
                yield event
                if event.done:
                    return
                if self.batch_pause:
                    time.sleep(self.batch_pause)
        finally:
            if self._executor is not None:
                self._executor.shutdown(wait=False)
                self._executor = None
