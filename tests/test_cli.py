from pathlib import Path

import pandas as pd
import pytest

from conftest import face_vec
from facesearch.cli import main
from facesearch.config import EngineConfig, parse_args


def test_parse_args_defaults():
    cfg = parse_args(["cluster"])
    assert isinstance(cfg, EngineConfig)
    assert cfg.command == "cluster"
    assert cfg.db_path == Path("facesearch.sqlite")
    assert cfg.similarity_threshold == 0.6
    assert cfg.min_points == 2
    assert cfg.extra == {"version": None}


def test_parse_args_regenerate_options(tmp_path):
    cfg = parse_args(["--db", str(tmp_path / "x.sqlite"), "--vector-type", "semantic", "regenerate",
                      "--provider", "fresh.parquet", "--target-version", "4", "--stale-after", "60",
                      "--provider-timeout", "2.5"])
    assert cfg.vector_type == "semantic"
    assert cfg.target_version == 4
    assert cfg.stale_after.total_seconds() == 60
    assert cfg.provider_timeout == 2.5
    assert cfg.extra["provider_path"] == Path("fresh.parquet")
    assert cfg.extra["resume"] is False


def test_parse_args_rejects_bad_input():
    with pytest.raises(SystemExit):
        parse_args([])
    with pytest.raises(SystemExit):
        parse_args(["persons", "--rename", "abc", "Alice"])


def _faces_file(path):
    rows = []
    for face_id, vector in (("A", face_vec(e0=1.0)), ("B", face_vec(e0=0.8, e1=0.6)), ("C", face_vec(e2=1.0))):
        rows.append({"entity_id": face_id, "vector_type": "face", "version": 1, "embedding": vector.tolist(),
                     "photo_id": f"photo-{face_id}", "bbox_x": 0.0, "bbox_y": 0.0,
                     "bbox_width": 10.0, "bbox_height": 10.0})
    pd.DataFrame(rows).to_parquet(path, index=False)
    return path


def test_import_cluster_validate_round(tmp_path, capsys):
    db = str(tmp_path / "cli.sqlite")
    source = _faces_file(tmp_path / "faces.parquet")
    assert main(["--db", db, "import", str(source), "--faces"]) == 0
    assert "stored 3 vector(s)" in capsys.readouterr().out
    assert main(["--db", db, "cluster"]) == 0
    assert "1 person(s) (1 new, 0 kept), 1 unclustered" in capsys.readouterr().out
    report = tmp_path / "quality.csv"
    assert main(["--db", db, "validate", "--report", str(report)]) == 0
    assert pd.read_csv(report)["face_count"].tolist() == [2]
    assert main(["--db", db, "persons"]) == 0
    assert "Person 1" in capsys.readouterr().out


def test_regenerate_command(tmp_path, capsys):
    db = str(tmp_path / "cli.sqlite")
    source = _faces_file(tmp_path / "faces.parquet")
    main(["--db", db, "import", str(source), "--faces"])
    fresh = tmp_path / "fresh.parquet"
    pd.read_parquet(source).to_parquet(fresh, index=False)
    assert main(["--db", db, "regenerate", "--provider", str(fresh), "--target-version", "2"]) == 0
    out = capsys.readouterr().out
    assert "completed: 3/3 processed" in out
    assert main(["--db", db, "jobs"]) == 0
    assert "completed" in capsys.readouterr().out


def test_errors_exit_non_zero(tmp_path, capsys):
    db = str(tmp_path / "cli.sqlite")
    assert main(["--db", db, "similar", "missing"]) == 1
    assert "error:" in capsys.readouterr().err


def test_malformed_import_exits_non_zero(tmp_path, capsys):
    db = str(tmp_path / "cli.sqlite")
    source = tmp_path / "bare.parquet"
    pd.DataFrame({"entity_id": ["A"], "embedding": [face_vec(e0=1.0).tolist()]}).to_parquet(source, index=False)
    assert main(["--db", db, "import", str(source), "--faces"]) == 1
    assert "lacks face columns" in capsys.readouterr().err
    assert main(["--db", db, "import", str(source)]) == 1
    assert "vector_type and version are required" in capsys.readouterr().err
    assert main(["--db", db, "import", str(source), "--version", "1"]) == 0
