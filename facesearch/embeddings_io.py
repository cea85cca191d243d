"""
Parquet input/output for stored vectors.

Snapshots are written per vector type and version into a dedicated
directory.  An export may consist of several ``part-*.parquet`` files, one
per page read from the repository, and a later export into the same
directory simply appends new parts.  Each row holds one entity's vector in
an ``embedding`` column (list of floats) together with ``entity_id``,
``vector_type`` and ``version``.

The same layout is what an external inference run is expected to produce;
:class:`ParquetEmbeddingProvider` serves such a file to the regeneration
pipeline.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
import pyarrow as pa
import pyarrow.parquet as pq

from .errors import InvalidDimension, ProviderFailure
from .persons import BoundingBox, PersonStore
from .repository import ANY_VERSION, EmbeddingRecord, EmbeddingRepository, VersionFilter

logger = logging.getLogger(__name__)

COLUMNS = ["entity_id", "vector_type", "version", "embedding"]
FACE_COLUMNS = ["photo_id", "bbox_x", "bbox_y", "bbox_width", "bbox_height"]


def snapshot_dir(base: Path, vector_type: str, label: str) -> Path:
    return Path(base) / f"{vector_type}_{label}"


def next_part_index(path: Path) -> int:
    """Return the index for the next ``part-*.parquet`` file in ``path``."""
    indices = []
    for f in path.glob("part-*.parquet"):
        suffix = f.stem.split("-", 1)[1]
        if suffix.isdigit():
            indices.append(int(suffix))
    return max(indices) + 1 if indices else 0


def write_part(path: Path, records: Iterable[EmbeddingRecord]) -> Optional[Path]:
    """Write a batch of records to a new Parquet part under ``path``.

    Returns the part path, or ``None`` when ``records`` is empty.
    """
    rows = [
        {
            "entity_id": r.entity_id,
            "vector_type": r.vector_type,
            "version": r.version,
            "embedding": np.asarray(r.vector, dtype=np.float32).tolist(),
        }
        for r in records
    ]
    if not rows:
        return None
    path.mkdir(parents=True, exist_ok=True)
    part_path = path / f"part-{next_part_index(path):03d}.parquet"
    table = pa.Table.from_pandas(pd.DataFrame(rows, columns=COLUMNS), preserve_index=False)
    pq.write_table(table, part_path)
    return part_path


def export_snapshot(repository: EmbeddingRepository, base: Path, vector_type: str,
                    version_filter: VersionFilter = ANY_VERSION, label: str = "snapshot",
                    page_size: int = 500) -> Tuple[Path, int]:
    """Export all matching vectors to Parquet parts.

    Parameters
    ----------
    repository: EmbeddingRepository
        Source of the vectors.
    base: Path
        Export root; parts land in ``<base>/<vector_type>_<label>/``.
    vector_type: str
        ``"face"`` or ``"semantic"``.
    version_filter: VersionFilter
        Restricts which versions are exported.
    page_size: int
        Records per repository page and per part.

    Returns
    -------
    (Path, int)
        The snapshot directory and the number of exported rows.
    """
    path = snapshot_dir(base, vector_type, label)
    cursor = None
    exported = 0
    while True:
        page = repository.list_by_version(vector_type, version_filter, limit=page_size, after_id=cursor)
        if write_part(path, page.records) is not None:
            exported += len(page)
        if page.next_cursor is None:
            break
        cursor = page.next_cursor
    logger.info("Exported %d %s vector(s) to %s", exported, vector_type, path)
    return path, exported


def read_snapshot(path: Path) -> pd.DataFrame:
    """Read a single Parquet file or every part of a snapshot directory."""
    path = Path(path)
    parts: Sequence[Path] = sorted(path.glob("part-*.parquet")) if path.is_dir() else [path]
    dfs: List[pd.DataFrame] = [pq.read_table(p).to_pandas() for p in parts]
    return pd.concat(dfs, ignore_index=True) if dfs else pd.DataFrame(columns=COLUMNS)


def import_snapshot(repository: EmbeddingRepository, path: Path, vector_type: Optional[str] = None,
                    version: Optional[int] = None) -> Tuple[int, int]:
    """Store the vectors of a Parquet snapshot in the repository.

    ``vector_type`` and ``version`` override the file's columns when given;
    one of the two sources must provide them.  Rows with a wrong vector length
    are skipped and logged.

    Returns
    -------
    (int, int)
        Rows stored (changed) and rows rejected.
    """
    df = read_snapshot(path)
    stored = rejected = 0
    for row in df.itertuples(index=False):
        row_type = vector_type or getattr(row, "vector_type", None)
        row_version = version if version is not None else getattr(row, "version", None)
        if row_type is None or row_version is None:
            raise ValueError(f"{path}: vector_type and version are required for {row.entity_id}")
        try:
            if repository.put(str(row.entity_id), row_type, row.embedding, int(row_version)):
                stored += 1
        except InvalidDimension as exc:
            logger.warning("Skipping %s: %s", row.entity_id, exc)
            rejected += 1
    logger.info("Imported %d vector(s) from %s (%d rejected)", stored, path, rejected)
    return stored, rejected


class ParquetEmbeddingProvider:
    """Serve precomputed vectors from a Parquet file or snapshot directory.

    The whole file is loaded once; :meth:`vector` raises
    :class:`ProviderFailure` for entities the file does not cover.
    """

    def __init__(self, path: Path, id_column: str = "entity_id", vector_column: str = "embedding") -> None:
        df = read_snapshot(path)
        self.path = Path(path)
        self._vectors: Dict[str, np.ndarray] = {
            str(entity_id): np.asarray(vector, dtype=np.float32)
            for entity_id, vector in zip(df[id_column], df[vector_column])
        }
        logger.debug("Loaded %d vector(s) from %s", len(self._vectors), self.path)

    def __len__(self) -> int:
        return len(self._vectors)

    def vector(self, entity_id: str) -> np.ndarray:
        try:
            return self._vectors[entity_id]
        except KeyError:
            raise ProviderFailure(f"{self.path} has no vector for {entity_id}") from None


def import_faces(persons: PersonStore, path: Path) -> int:
    """Register face detections carried alongside the vectors.

    Rows need ``photo_id`` and ``bbox_x``/``bbox_y``/``bbox_width``/``bbox_height``
    columns (``confidence`` is optional).  Faces that already exist are left
    alone.  Returns the number of faces added.
    """
    df = read_snapshot(path)
    missing = [c for c in FACE_COLUMNS if c not in df.columns]
    if missing:
        raise ValueError(f"{path} lacks face columns: {', '.join(missing)}")
    known = persons.known_face_ids(df["entity_id"].astype(str))
    added = 0
    for row in df.drop_duplicates("entity_id").itertuples(index=False):
        face_id = str(row.entity_id)
        if face_id in known:
            continue
        confidence = getattr(row, "confidence", None)
        persons.add_face(
            face_id,
            str(row.photo_id),
            BoundingBox(float(row.bbox_x), float(row.bbox_y), float(row.bbox_width), float(row.bbox_height)),
            confidence=None if confidence is None or pd.isna(confidence) else float(confidence),
        )
        added += 1
    logger.info("Registered %d new face(s) from %s", added, path)
    return added
