"""
Top-level package for facesearch, the similarity search and face clustering
engine of a photo library.

Exposes the public API and imports the console entry point in :mod:`facesearch.cli`.

The actual functionality is organised into smaller modules:

- :mod:`facesearch.config` – dataclass for engine configuration and command line parsing.
- :mod:`facesearch.errors` – the exception hierarchy shared by all components.
- :mod:`facesearch.db` – SQLite schema and helpers for vectors, faces, Persons and jobs.
- :mod:`facesearch.repository` – versioned vector storage with cursor pagination.
- :mod:`facesearch.persons` – face detections and Person membership.
- :mod:`facesearch.similarity` – cosine similarity and top-k search.
- :mod:`facesearch.fusion` – weighted merging of keyword and semantic results.
- :mod:`facesearch.clustering` – DBSCAN over face vectors, reconciled with existing Persons.
- :mod:`facesearch.quality` – intra/inter cluster quality report.
- :mod:`facesearch.jobs` – persistence of regeneration jobs and their checkpoints.
- :mod:`facesearch.pipeline` – resumable batch regeneration of stored vectors.
- :mod:`facesearch.embeddings_io` – Parquet import/export and a Parquet-backed embedding provider.

You can drive the engine from the command line using the `facesearch` script installed by this
package.
"""

__all__ = [
    "config",
    "errors",
    "db",
    "repository",
    "persons",
    "similarity",
    "fusion",
    "clustering",
    "quality",
    "jobs",
    "pipeline",
    "embeddings_io",
    "cli",
]
