"""
Command-line entry point for facesearch.

This module parses command line arguments, constructs an
:class:`EngineConfig` object and dispatches to the requested sub-command.
"""

from __future__ import annotations

import logging
import sys
from typing import List, Optional

from sqlalchemy.engine import Engine

from .clustering import ClusteringEngine
from .config import EngineConfig, parse_args
from .db import init_db
from .embeddings_io import ParquetEmbeddingProvider, export_snapshot, import_faces, import_snapshot
from .errors import FaceSearchError
from .jobs import FAILED, JobStore
from .persons import PersonStore
from .pipeline import BatchRegenerationPipeline
from .quality import ClusterQualityValidator
from .repository import ANY_VERSION, EmbeddingRepository, VersionFilter
from .similarity import SimilarityIndex, similarity_level

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"


def _version_filter(version: Optional[int]) -> VersionFilter:
    return ANY_VERSION if version is None else VersionFilter.equal(version)


def _clustering(cfg: EngineConfig, repository: EmbeddingRepository, persons: PersonStore) -> ClusteringEngine:
    return ClusteringEngine(repository, persons, cfg.similarity_threshold, cfg.min_points)


def _cmd_import(cfg: EngineConfig, engine: Engine) -> None:
    path = cfg.extra["path"]
    if cfg.extra.get("faces"):
        import_faces(PersonStore(engine), path)
    stored, rejected = import_snapshot(EmbeddingRepository(engine), path, cfg.vector_type, cfg.extra.get("version"))
    print(f"stored {stored} vector(s), rejected {rejected}")


def _cmd_export(cfg: EngineConfig, engine: Engine) -> None:
    path, count = export_snapshot(EmbeddingRepository(engine), cfg.extra["output"], cfg.vector_type,
                                  _version_filter(cfg.extra.get("version")), label=cfg.extra["label"])
    print(f"exported {count} vector(s) to {path}")


def _cmd_regenerate(cfg: EngineConfig, engine: Engine) -> None:
    repository = EmbeddingRepository(engine)
    persons = PersonStore(engine)
    pipeline = BatchRegenerationPipeline(
        repository,
        JobStore(engine),
        ParquetEmbeddingProvider(cfg.extra["provider_path"]),
        vector_type=cfg.vector_type,
        target_version=cfg.target_version,
        batch_size=cfg.batch_size,
        stale_after=cfg.stale_after,
        provider_timeout=cfg.provider_timeout,
        clustering=None if cfg.extra.get("no_cluster") else _clustering(cfg, repository, persons),
    )
    if cfg.extra.get("resume"):
        pipeline.resume()
    else:
        pipeline.start()
    for event in pipeline.run():
        print(f"job {event.job_id} {event.status}: {event.processed}/{event.total} processed, "
              f"{event.failed} failed")
    if pipeline.job.status == FAILED:
        raise FaceSearchError(f"job {pipeline.job.id} failed: {pipeline.job.error_message}")


def _cmd_cluster(cfg: EngineConfig, engine: Engine) -> None:
    repository = EmbeddingRepository(engine)
    result = _clustering(cfg, repository, PersonStore(engine)).run(_version_filter(cfg.extra.get("version")))
    print(f"{len(result.clusters)} person(s) ({result.created} new, {result.reused} kept), "
          f"{len(result.noise)} unclustered face(s), {result.removed_persons} empty person(s) removed")


def _cmd_validate(cfg: EngineConfig, engine: Engine) -> None:
    validator = ClusterQualityValidator(PersonStore(engine), EmbeddingRepository(engine),
                                        intra_floor=cfg.intra_floor, inter_ceiling=cfg.inter_ceiling,
                                        pair_sample_size=cfg.pair_sample_size, worst_pairs=cfg.worst_pairs)
    report = validator.validate()
    print(f"persons: {report.passed} passed, {report.failed} low confidence, {report.skipped} skipped")
    print(f"pass rate: {report.pass_rate:.1%}  same-person avg: {report.same_person_avg:.3f}  "
          f"different-person avg: {report.different_person_avg:.3f}")
    for pair in report.ambiguous_pairs:
        print(f"  ambiguous: {pair.person_a} / {pair.person_b} ({pair.similarity:.3f})")
    for note in report.recommendations:
        print(f"- {note}")
    out = cfg.extra.get("report")
    if out is not None:
        df = report.to_frame()
        if out.suffix == ".parquet":
            df.to_parquet(out, index=False)
        else:
            df.to_csv(out, index=False)
        logger.info("Wrote quality report to %s", out)


def _cmd_similar(cfg: EngineConfig, engine: Engine) -> None:
    index = SimilarityIndex(EmbeddingRepository(engine))
    results = index.find_similar(cfg.extra["entity_id"], cfg.vector_type, k=cfg.top_k,
                                 min_similarity=cfg.min_similarity)
    for candidate in results:
        print(f"{candidate.rank:3d}  {candidate.id}  {candidate.similarity:.4f}  "
              f"{similarity_level(candidate.similarity)}")


def _cmd_persons(cfg: EngineConfig, engine: Engine) -> None:
    persons = PersonStore(engine)
    if cfg.extra.get("rename"):
        person_id, label = cfg.extra["rename"]
        persons.rename_person(person_id, label)
    if cfg.extra.get("merge"):
        target, source = cfg.extra["merge"]
        moved = persons.merge_persons(target, source)
        print(f"moved {moved} face(s) from person {source} to {target}")
    if cfg.extra.get("cleanup"):
        print(f"removed {persons.cleanup_empty_persons()} empty person(s)")
    for person in persons.list_persons():
        kind = "manual" if person.is_manual else "auto"
        print(f"{person.id:5d}  {person.label:<20}  {person.face_count:5d} face(s)  {kind}")


def _cmd_jobs(cfg: EngineConfig, engine: Engine) -> None:
    jobs = JobStore(engine)
    for job in jobs.list(cfg.extra.get("status")):
        print(f"{job.id:5d}  {job.vector_type:<8}  v{job.target_version}  {job.status:<9}  "
              f"{job.processed}/{job.total} ({job.failed} failed)  last={job.last_processed_id}")
        if job.error_message:
            print(f"       {job.error_message}")


COMMANDS = {
    "import": _cmd_import,
    "export": _cmd_export,
    "regenerate": _cmd_regenerate,
    "cluster": _cmd_cluster,
    "validate": _cmd_validate,
    "similar": _cmd_similar,
    "persons": _cmd_persons,
    "jobs": _cmd_jobs,
}


def main(argv: Optional[List[str]] = None) -> int:
    """Entry point called by the ``facesearch`` script."""
    cfg = parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if cfg.verbose else logging.INFO, format=LOG_FORMAT)
    try:
        engine = init_db(cfg.db_path)
        COMMANDS[cfg.command](cfg, engine)
    except (FaceSearchError, OSError, ValueError) as exc:
        logger.debug("Command %s failed", cfg.command, exc_info=True)
        print(f"error: {exc}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
