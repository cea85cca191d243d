"""
Density-based clustering of face embeddings into Persons.

Two faces are neighbours when their cosine similarity is at least
``similarity_threshold``.  A face with at least ``min_points - 1``
neighbours is a core point.  Clusters grow from core points through chains
of neighbours (DBSCAN semantics with similarity in place of distance); faces
reached by no core point stay unclustered.

Neighbour candidates come from a FAISS inner-product range search over
L2-normalised vectors and are confirmed with an exact float64 dot product, so
the threshold is applied exactly and symmetrically.  Faces are visited in
ascending id order, which makes cluster membership and member order
reproducible run to run.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

import faiss
import numpy as np
from sqlalchemy.exc import SQLAlchemyError

from .errors import ClusteringInProgress, RepositoryUnavailable
from .persons import PersonStore
from .repository import ANY_VERSION, EmbeddingRepository, VersionFilter
from .similarity import normalize_rows

logger = logging.getLogger(__name__)

# Slack on the FAISS radius; float32 search must not miss pairs sitting
# exactly on the threshold.  Candidates are re-checked in float64.
RANGE_MARGIN = 1e-3

NOISE = -1


def build_neighbour_graph(vectors: np.ndarray, similarity_threshold: float) -> List[List[int]]:
    """Return, for each row, the sorted indices of its neighbours.

    Parameters
    ----------
    vectors: ndarray, shape (n_samples, dim)
        Embedding vectors; they need not be normalised.  Zero vectors have
        similarity 0 to everything.
    similarity_threshold: float
        Minimum cosine similarity (inclusive) for two rows to be neighbours.

    Returns
    -------
    list of list of int
        Symmetric adjacency lists without self loops.
    """
    n = vectors.shape[0]
    if n == 0:
        return []
    unit = normalize_rows(vectors)
    unit32 = np.ascontiguousarray(unit, dtype=np.float32)
    index = faiss.IndexFlatIP(unit32.shape[1])
    index.add(unit32)
    lims, _sims, ids = index.range_search(unit32, float(similarity_threshold) - RANGE_MARGIN)
    neighbours: List[set] = [set() for _ in range(n)]
    for i in range(n):
        for j in ids[lims[i]:lims[i + 1]]:
            j = int(j)
            # each pair is decided once, from its lower index
            if j <= i:
                continue
            if float(np.dot(unit[i], unit[j])) >= similarity_threshold:
                neighbours[i].add(j)
                neighbours[j].add(i)
    return [sorted(s) for s in neighbours]


def dbscan(ids: Sequence[str], vectors: np.ndarray, similarity_threshold: float = 0.6,
           min_points: int = 2) -> Tuple[List[List[str]], List[str]]:
    """Cluster vectors with DBSCAN using cosine similarity.

    Parameters
    ----------
    ids: sequence of str
        Entity id of each row of ``vectors``.
    vectors: ndarray, shape (n_samples, dim)
        Face embeddings.
    similarity_threshold: float
        Neighbourhood cutoff on cosine similarity.
    min_points: int
        A point is core when it has at least ``min_points - 1`` neighbours.

    Returns
    -------
    (list of list of str, list of str)
        Clusters in discovery order, each listing member ids in visit order,
        and the noise ids in ascending order.
    """
    if min_points < 1:
        raise ValueError("min_points must be at least 1")
    if len(ids) != vectors.shape[0]:
        raise ValueError("ids and vectors must have the same length")
    order = sorted(range(len(ids)), key=lambda i: ids[i])
    sorted_ids = [ids[i] for i in order]
    matrix = vectors[order] if len(order) else vectors
    neighbours = build_neighbour_graph(matrix, similarity_threshold)
    n = len(sorted_ids)
    core = [len(neighbours[i]) >= min_points - 1 for i in range(n)]
    labels: List[Optional[int]] = [None] * n
    clusters: List[List[int]] = []
    for i in range(n):
        if labels[i] is not None:
            continue
        if not core[i]:
            # may still be claimed as a border point later
            labels[i] = NOISE
            continue
        cluster_id = len(clusters)
        members = [i]
        labels[i] = cluster_id
        queue = deque([i])
        while queue:
            p = queue.popleft()
            for q in neighbours[p]:
                if labels[q] is None or labels[q] == NOISE:
                    labels[q] = cluster_id
                    members.append(q)
                    if core[q]:
                        queue.append(q)
        clusters.append(members)
    noise = [sorted_ids[i] for i in range(n) if labels[i] == NOISE]
    return [[sorted_ids[i] for i in members] for members in clusters], noise


@dataclass
class ClusterResult:
    """Outcome of one clustering pass."""
    clusters: List[List[str]]
    person_ids: List[int]
    noise: List[str]
    created: int = 0
    reused: int = 0
    removed_persons: int = 0
    skipped_faces: List[str] = field(default_factory=list)

    @property
    def membership(self) -> Dict[str, int]:
        return {face_id: pid for pid, members in zip(self.person_ids, self.clusters) for face_id in members}


def match_existing(clusters: Sequence[Sequence[str]], previous: Dict[str, int]) -> List[Optional[int]]:
    """Pick an existing person for each cluster by largest member overlap.

    Clusters are matched in order; a person is claimed at most once and
    overlap ties go to the lower person id.  Unmatched clusters get ``None``.
    """
    claimed = set()
    matches: List[Optional[int]] = []
    for members in clusters:
        overlap: Dict[int, int] = {}
        for face_id in members:
            pid = previous.get(face_id)
            if pid is not None and pid not in claimed:
                overlap[pid] = overlap.get(pid, 0) + 1
        if overlap:
            best = min(overlap, key=lambda pid: (-overlap[pid], pid))
            claimed.add(best)
            matches.append(best)
        else:
            matches.append(None)
    return matches


class ClusteringEngine:
    """Runs clustering passes over stored face vectors and persists Persons.

    Parameters
    ----------
    repository: EmbeddingRepository
        Source of face vectors.
    persons: PersonStore
        Destination of the resulting Person groupings.
    similarity_threshold: float
        Neighbourhood cutoff on cosine similarity.
    min_points: int
        DBSCAN minimum points (the point itself included).
    """

    def __init__(self, repository: EmbeddingRepository, persons: PersonStore,
                 similarity_threshold: float = 0.6, min_points: int = 2) -> None:
        self.repository = repository
        self.persons = persons
        self.similarity_threshold = similarity_threshold
        self.min_points = min_points
        self._lock = threading.Lock()

    def run(self, version_filter: VersionFilter = ANY_VERSION) -> ClusterResult:
        """Cluster all face vectors matching ``version_filter`` and store the result.

        Faces attached to manually created Persons are left untouched.  Faces
        without a detection record are ignored.

        Raises
        ------
        ClusteringInProgress
            If another pass on this engine has not finished.
        """
        if not self._lock.acquire(blocking=False):
            raise ClusteringInProgress("a clustering pass is already running")
        try:
            return self._run(version_filter)
        finally:
            self._lock.release()

    def _run(self, version_filter: VersionFilter) -> ClusterResult:
        ids, vectors = self.repository.snapshot("face", version_filter)
        known = self.persons.known_face_ids()
        previous = self.persons.membership()
        manual = {p.id for p in self.persons.list_persons() if p.is_manual}
        keep = [i for i, face_id in enumerate(ids)
                if face_id in known and previous.get(face_id) not in manual]
        skipped = [face_id for face_id in ids if face_id not in known]
        if skipped:
            logger.warning("Ignoring %d vector(s) without a face record", len(skipped))
        managed = [ids[i] for i in keep]
        matrix = vectors[keep] if keep else vectors[:0]
        logger.info("Clustering %d faces (threshold %.2f, min_points %d)",
                    len(managed), self.similarity_threshold, self.min_points)
        clusters, noise = dbscan(managed, matrix, self.similarity_threshold, self.min_points)
        automatic_previous = {f: pid for f, pid in previous.items() if pid not in manual}
        matches = match_existing(clusters, automatic_previous)
        try:
            with self.persons.engine.begin() as conn:
                person_ids = self.persons.apply_clusters(conn, list(zip(matches, clusters)), managed)
                removed = self.persons.remove_empty(conn, automatic_only=True)
        except SQLAlchemyError as exc:
            raise RepositoryUnavailable(f"could not store clustering result: {exc}") from exc
        result = ClusterResult(
            clusters=clusters,
            person_ids=person_ids,
            noise=noise,
            created=sum(1 for m in matches if m is None),
            reused=sum(1 for m in matches if m is not None),
            removed_persons=removed,
            skipped_faces=skipped,
        )
        logger.info("Clustering done: %d clusters (%d new, %d reused), %d noise faces, %d persons removed",
                    len(clusters), result.created, result.reused, len(noise), removed)
        return result
