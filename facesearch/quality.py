"""
Quality metrics for Person groupings.

After a clustering pass the validator measures how tight each Person is
(mean pairwise cosine similarity of its faces) and how close Persons are to
each other (mean similarity over a sampled cross product of their faces).
Persons below an intra-cluster floor are flagged as low confidence and pairs
above an inter-cluster ceiling are flagged as ambiguous, for manual review.
"""

from __future__ import annotations

import datetime as _dt
import itertools
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import numpy as np
import pandas as pd

from .db import VECTOR_DIMENSIONS, utcnow
from .persons import PersonStore
from .repository import ANY_VERSION, EmbeddingRepository, VersionFilter
from .similarity import normalize_rows

logger = logging.getLogger(__name__)


@dataclass
class PersonQuality:
    person_id: int
    label: str
    face_count: int
    intra_similarity: Optional[float]
    low_confidence: bool


@dataclass(frozen=True)
class PersonPair:
    person_a: int
    person_b: int
    similarity: float


@dataclass
class ClusterQualityReport:
    """Structured outcome of :meth:`ClusterQualityValidator.validate`.

    Attributes
    ----------
    generated_at: datetime
        When the report was produced (UTC).
    persons: list of PersonQuality
        One entry per Person, in person id order.
    ambiguous_pairs: list of PersonPair
        Worst offending pairs first, at most ``worst_pairs`` of them.
    low_confidence_count, ambiguous_count: int
        Number of flags raised (``ambiguous_count`` counts all pairs, not
        only those listed).
    passed, failed, skipped: int
        Persons at or above the floor, below it, and with fewer than two
        vectors.
    pass_rate: float
        Fraction of same-person face pairs whose similarity exceeds the floor.
    same_person_avg, different_person_avg: float
        Mean of all same-person pair similarities and of all sampled
        inter-person similarities.
    recommendations: list of str
        Human readable follow-ups for review tooling.
    """
    generated_at: _dt.datetime
    persons: List[PersonQuality]
    ambiguous_pairs: List[PersonPair]
    low_confidence_count: int
    ambiguous_count: int
    passed: int
    failed: int
    skipped: int
    pass_rate: float
    same_person_avg: float
    different_person_avg: float
    recommendations: List[str] = field(default_factory=list)

    def to_frame(self) -> pd.DataFrame:
        """Per-person metrics as a DataFrame, lowest intra similarity first."""
        df = pd.DataFrame([vars(p) for p in self.persons],
                          columns=["person_id", "label", "face_count", "intra_similarity", "low_confidence"])
        return df.sort_values(["intra_similarity", "person_id"], na_position="last", ignore_index=True)

    def pairs_frame(self) -> pd.DataFrame:
        return pd.DataFrame([vars(p) for p in self.ambiguous_pairs],
                            columns=["person_a", "person_b", "similarity"])


def _mean_pairwise(unit: np.ndarray) -> Optional[float]:
    n = unit.shape[0]
    if n < 2:
        return None
    gram = unit @ unit.T
    upper = gram[np.triu_indices(n, k=1)]
    return float(upper.mean())


class ClusterQualityValidator:
    """Computes intra/inter cluster similarity and flags weak groupings.

    Parameters
    ----------
    persons: PersonStore
        Source of Person membership and member vectors.
    repository: EmbeddingRepository
        Used for dimension checks.
    intra_floor: float
        Persons whose mean pairwise similarity is below this are low confidence.
    inter_ceiling: float
        Person pairs whose sampled similarity is above this are ambiguous.
    pair_sample_size: int
        Members taken from each Person (in member order) for inter-cluster sampling.
    worst_pairs: int
        How many ambiguous pairs the report lists.
    """

    def __init__(self, persons: PersonStore, repository: EmbeddingRepository,
                 intra_floor: float = 0.55, inter_ceiling: float = 0.65,
                 pair_sample_size: int = 3, worst_pairs: int = 10) -> None:
        self.persons = persons
        self.repository = repository
        self.intra_floor = intra_floor
        self.inter_ceiling = inter_ceiling
        self.pair_sample_size = pair_sample_size
        self.worst_pairs = worst_pairs

    def _unit_vectors(self, person_id: int, limit: Optional[int] = None) -> np.ndarray:
        _ids, vectors = self.persons.member_vectors(person_id, "face", limit=limit)
        if vectors.shape[0] == 0:
            return vectors
        return normalize_rows(vectors)

    def intra_cluster_similarity(self, person_id: int) -> Optional[float]:
        """Mean pairwise cosine similarity of the Person's faces.

        ``None`` when the Person has fewer than two face vectors.
        """
        return _mean_pairwise(self._unit_vectors(person_id))

    def inter_cluster_similarity(self, person_a: int, person_b: int) -> Optional[float]:
        """Mean similarity over the cross product of sampled members.

        ``None`` when either Person has no face vectors.
        """
        a = self._unit_vectors(person_a, self.pair_sample_size)
        b = self._unit_vectors(person_b, self.pair_sample_size)
        if a.shape[0] == 0 or b.shape[0] == 0:
            return None
        return float((a @ b.T).mean())

    def validate(self) -> ClusterQualityReport:
        persons = self.persons.list_persons()
        entries: List[PersonQuality] = []
        same_person: List[np.ndarray] = []
        samples: Dict[int, np.ndarray] = {}
        for person in persons:
            unit = self._unit_vectors(person.id)
            if unit.shape[0]:
                samples[person.id] = unit[: self.pair_sample_size]
            intra = _mean_pairwise(unit)
            if intra is not None:
                same_person.append((unit @ unit.T)[np.triu_indices(unit.shape[0], k=1)])
            entries.append(PersonQuality(
                person_id=person.id,
                label=person.label,
                face_count=person.face_count,
                intra_similarity=intra,
                low_confidence=intra is not None and intra < self.intra_floor,
            ))

        pair_sims: List[PersonPair] = []
        for pa, pb in itertools.combinations(sorted(samples), 2):
            sim = float((samples[pa] @ samples[pb].T).mean())
            pair_sims.append(PersonPair(pa, pb, sim))
        ambiguous = [p for p in pair_sims if p.similarity > self.inter_ceiling]
        ambiguous.sort(key=lambda p: (-p.similarity, p.person_a, p.person_b))

        flat = np.concatenate(same_person) if same_person else np.zeros(0)
        pass_rate = float((flat > self.intra_floor).mean()) if flat.size else 0.0
        scored = [e for e in entries if e.intra_similarity is not None]
        low = sum(1 for e in scored if e.low_confidence)
        report = ClusterQualityReport(
            generated_at=utcnow(),
            persons=entries,
            ambiguous_pairs=ambiguous[: self.worst_pairs],
            low_confidence_count=low,
            ambiguous_count=len(ambiguous),
            passed=len(scored) - low,
            failed=low,
            skipped=len(entries) - len(scored),
            pass_rate=pass_rate,
            same_person_avg=float(flat.mean()) if flat.size else 0.0,
            different_person_avg=float(np.mean([p.similarity for p in pair_sims])) if pair_sims else 0.0,
        )
        report.recommendations = self._recommendations(report)
        logger.info("Quality check: %d persons, %d low confidence, %d ambiguous pairs, pass rate %.1f%%",
                    len(entries), low, len(ambiguous), pass_rate * 100)
        return report

    @staticmethod
    def _recommendations(report: ClusterQualityReport) -> List[str]:
        notes = []
        if report.pass_rate < 0.7 and report.passed + report.failed:
            notes.append("Same-person similarity is low; raise the clustering threshold or regenerate face vectors.")
        if report.low_confidence_count:
            notes.append(f"{report.low_confidence_count} person(s) need manual review.")
        if report.ambiguous_count:
            notes.append(f"{report.ambiguous_count} person pair(s) may be the same individual; consider merging.")
        if not notes:
            notes.append("No issues found.")
        return notes

    def check_vector_dimensions(self, version_filter: VersionFilter = ANY_VERSION) -> Dict[str, Dict[str, int]]:
        """Count stored vectors whose length matches / mismatches their type."""
        counts: Dict[str, Dict[str, int]] = {}
        for vector_type, dim in VECTOR_DIMENSIONS.items():
            valid = invalid = 0
            cursor = None
            while True:
                page = self.repository.list_by_version(vector_type, version_filter, limit=500, after_id=cursor)
                for record in page.records:
                    if record.vector.shape[0] == dim:
                        valid += 1
                    else:
                        invalid += 1
                if page.next_cursor is None:
                    break
                cursor = page.next_cursor
            counts[vector_type] = {"valid": valid, "invalid": invalid}
        return counts
