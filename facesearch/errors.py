"""
Exception types raised by the facesearch engine.

All errors derive from :class:`FaceSearchError` so that callers (the command
line, a host application) can catch engine failures in one place while still
distinguishing the individual kinds.
"""

from __future__ import annotations


class FaceSearchError(Exception):
    """Base class for all engine errors."""


class InvalidDimension(FaceSearchError):
    """A vector's length does not match the dimension of its vector type."""

    def __init__(self, vector_type: str, expected: int, actual: int) -> None:
        super().__init__(
            f"{vector_type} vectors must have {expected} dimensions, got {actual}"
        )
        self.vector_type = vector_type
        self.expected = expected
        self.actual = actual


class NotFound(FaceSearchError):
    """A requested record does not exist."""


class DuplicateAssignment(FaceSearchError):
    """A face was attached to a second Person without being detached first."""

    def __init__(self, face_id: str, current_person_id: int, target_person_id: int) -> None:
        super().__init__(
            f"face {face_id} already belongs to person {current_person_id}; "
            f"remove it before assigning it to person {target_person_id}"
        )
        self.face_id = face_id
        self.current_person_id = current_person_id
        self.target_person_id = target_person_id


class JobAlreadyRunning(FaceSearchError):
    """Another regeneration job is already pending or running."""


class ClusteringInProgress(JobAlreadyRunning):
    """A clustering pass was started while another one is active."""


class StaleJob(FaceSearchError):
    """The job to resume has not sent a heartbeat within the staleness window."""


class ProviderTimeout(FaceSearchError):
    """The embedding provider did not answer before the deadline."""


class ProviderFailure(FaceSearchError):
    """The embedding provider failed for a single entity."""


class RepositoryUnavailable(FaceSearchError):
    """The persistence store could not be reached or rejected the operation."""
