"""
Configuration structures for the facesearch engine.

We use :class:`dataclasses.dataclass` to describe the tuning parameters shared
by the command line interface and the engine components.  Each field
corresponds to a user-controllable threshold, weight or limit, with the
defaults the engine was calibrated with.

The :func:`parse_args` function converts command line arguments into an
:class:`EngineConfig` instance.  Options specific to a sub-command (paths,
ids, output files) are stored in :attr:`EngineConfig.extra`.
"""

from __future__ import annotations

import argparse
import datetime as _dt
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional


@dataclass
class EngineConfig:
    """Parameters shared by all engine components.

    Attributes
    ----------
    db_path: Path
        SQLite database holding vectors, faces, Persons and jobs.  Created on
        first use.
    command: str
        Sub-command to run.
    vector_type: str
        ``"face"`` or ``"semantic"``.
    similarity_threshold: float
        Minimum cosine similarity for two faces to be neighbours when
        clustering.  Higher values give tighter, more numerous Persons.
    min_points: int
        DBSCAN minimum points, the face itself included.
    keyword_weight, semantic_weight: float
        Default fusion weights when no query intent is known.
    min_similarity: float
        Floor for similarity search results.
    top_k: int
        Number of similarity results returned.
    intra_floor: float
        Persons with a mean pairwise similarity below this are flagged.
    inter_ceiling: float
        Person pairs with a sampled similarity above this are flagged.
    pair_sample_size: int
        Faces per Person used for inter-cluster sampling.
    worst_pairs: int
        Ambiguous pairs listed in the quality report.
    batch_size: int
        Entities regenerated per batch and checkpoint.
    target_version: int
        Version stamped on regenerated vectors.
    stale_after_seconds: int
        A running job with an older heartbeat cannot be resumed.
    provider_timeout: Optional[float]
        Per-entity deadline for the embedding provider, in seconds.
    verbose: bool
        Log at DEBUG level.
    """
    db_path: Path
    command: str = "jobs"
    vector_type: str = "face"
    similarity_threshold: float = 0.6
    min_points: int = 2
    keyword_weight: float = 0.6
    semantic_weight: float = 0.4
    min_similarity: float = 0.1
    top_k: int = 50
    intra_floor: float = 0.55
    inter_ceiling: float = 0.65
    pair_sample_size: int = 3
    worst_pairs: int = 10
    batch_size: int = 50
    target_version: int = 2
    stale_after_seconds: int = 300
    provider_timeout: Optional[float] = None
    verbose: bool = False
    # Sub-command arguments
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def stale_after(self) -> _dt.timedelta:
        return _dt.timedelta(seconds=self.stale_after_seconds)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="facesearch",
        description="Similarity search, face clustering and vector regeneration for a photo library",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("--db", dest="db_path", type=Path, default=Path("facesearch.sqlite"),
                        help="Path to SQLite database file")
    parser.add_argument("-v", "--verbose", dest="verbose", action="store_true",
                        help="Enable debug logging")
    parser.add_argument("--vector-type", dest="vector_type", choices=["face", "semantic"], default="face",
                        help="Vector type to operate on")
    parser.add_argument("--sim-threshold", dest="similarity_threshold", type=float, default=0.6,
                        help="Cosine similarity threshold for clustering neighbours")
    parser.add_argument("--min-points", dest="min_points", type=int, default=2,
                        help="DBSCAN minimum points (including the face itself)")
    parser.add_argument("--keyword-weight", dest="keyword_weight", type=float, default=0.6,
                        help="Default weight of keyword results in fusion")
    parser.add_argument("--semantic-weight", dest="semantic_weight", type=float, default=0.4,
                        help="Default weight of semantic results in fusion")
    parser.add_argument("--intra-floor", dest="intra_floor", type=float, default=0.55,
                        help="Flag Persons whose intra-cluster similarity is below this")
    parser.add_argument("--inter-ceiling", dest="inter_ceiling", type=float, default=0.65,
                        help="Flag Person pairs whose similarity is above this")
    parser.add_argument("--pair-sample-size", dest="pair_sample_size", type=int, default=3,
                        help="Faces per Person sampled for inter-cluster similarity")
    parser.add_argument("--worst-pairs", dest="worst_pairs", type=int, default=10,
                        help="Number of ambiguous pairs listed in the report")

    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("import", help="Import vectors (and face records) from Parquet",
                       formatter_class=argparse.ArgumentDefaultsHelpFormatter)
    p.add_argument("path", type=Path, help="Parquet file or snapshot directory")
    p.add_argument("--version", dest="version", type=int, default=None,
                   help="Override the version column of the file")
    p.add_argument("--faces", dest="faces", action="store_true",
                   help="Also register face detections from photo_id/bbox columns")

    p = sub.add_parser("export", help="Export vectors to Parquet parts",
                       formatter_class=argparse.ArgumentDefaultsHelpFormatter)
    p.add_argument("output", type=Path, help="Export root directory")
    p.add_argument("--version", dest="version", type=int, default=None,
                   help="Only export vectors of this version")
    p.add_argument("--label", dest="label", default="snapshot", help="Snapshot directory suffix")

    p = sub.add_parser("regenerate", help="Recompute vectors older than the target version",
                       formatter_class=argparse.ArgumentDefaultsHelpFormatter)
    p.add_argument("--provider", dest="provider_path", type=Path, required=True,
                   help="Parquet file holding the fresh vectors")
    p.add_argument("--target-version", dest="target_version", type=int, default=2,
                   help="Version stamped on regenerated vectors")
    p.add_argument("--batch-size", dest="batch_size", type=int, default=50,
                   help="Entities per batch and checkpoint")
    p.add_argument("--stale-after", dest="stale_after_seconds", type=int, default=300,
                   help="Seconds after which a running job's heartbeat is considered stale")
    p.add_argument("--provider-timeout", dest="provider_timeout", type=float, default=None,
                   help="Per-entity provider deadline in seconds")
    p.add_argument("--resume", dest="resume", action="store_true",
                   help="Resume the latest job instead of starting a new one")
    p.add_argument("--no-cluster", dest="no_cluster", action="store_true",
                   help="Skip the clustering pass after a face job completes")

    p = sub.add_parser("cluster", help="Cluster face vectors into Persons",
                       formatter_class=argparse.ArgumentDefaultsHelpFormatter)
    p.add_argument("--version", dest="version", type=int, default=None,
                   help="Only cluster vectors of this version")

    p = sub.add_parser("validate", help="Report cluster quality",
                       formatter_class=argparse.ArgumentDefaultsHelpFormatter)
    p.add_argument("--report", dest="report", type=Path, default=None,
                   help="Write per-person metrics to a .csv or .parquet file")

    p = sub.add_parser("similar", help="Find entities similar to a stored one",
                       formatter_class=argparse.ArgumentDefaultsHelpFormatter)
    p.add_argument("entity_id", help="Entity whose vector is the query")
    p.add_argument("-k", dest="top_k", type=int, default=50, help="Number of results")
    p.add_argument("--min-similarity", dest="min_similarity", type=float, default=0.1,
                   help="Drop results below this similarity")

    p = sub.add_parser("persons", help="List, rename or merge Persons",
                       formatter_class=argparse.ArgumentDefaultsHelpFormatter)
    p.add_argument("--rename", dest="rename", nargs=2, metavar=("PERSON_ID", "LABEL"), default=None,
                   help="Give a Person a new label")
    p.add_argument("--merge", dest="merge", nargs=2, type=int, metavar=("TARGET", "SOURCE"), default=None,
                   help="Move all faces of SOURCE into TARGET and delete SOURCE")
    p.add_argument("--cleanup", dest="cleanup", action="store_true",
                   help="Delete Persons without faces")

    p = sub.add_parser("jobs", help="List regeneration jobs",
                       formatter_class=argparse.ArgumentDefaultsHelpFormatter)
    p.add_argument("--status", dest="status", default=None, help="Only jobs in this status")
    return parser


def parse_args(argv: Optional[List[str]] = None) -> EngineConfig:
    """Parse command line arguments and return an :class:`EngineConfig` instance.

    Parameters
    ----------
    argv: list of str, optional
        List of command line arguments.  If omitted, :mod:`sys.argv` will be
        used.  This parameter facilitates testing.

    Returns
    -------
    EngineConfig
        Populated configuration object.
    """
    parser = _build_parser()
    args = parser.parse_args(argv)
    values = vars(args)
    known = {name for name in EngineConfig.__dataclass_fields__ if name != "extra"}
    config = EngineConfig(
        db_path=values.pop("db_path"),
        **{name: values.pop(name) for name in list(values) if name in known},
    )
    config.extra = values

    if config.command == "regenerate" and config.batch_size <= 0:
        parser.error("--batch-size must be positive")
    if config.command == "persons" and config.extra.get("rename"):
        person_id, label = config.extra["rename"]
        if not person_id.isdigit():
            parser.error("--rename expects a numeric person id")
        config.extra["rename"] = (int(person_id), label)
    return config
