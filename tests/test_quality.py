import numpy as np
import pandas as pd
import pytest

from conftest import face_vec
from facesearch.quality import ClusterQualityValidator


def _person(persons, members):
    pid = persons.create_person()
    for face_id in members:
        persons.assign_face(face_id, pid)
    return pid


@pytest.fixture
def validator(persons, repository):
    return ClusterQualityValidator(persons, repository)


def test_intra_similarity_of_tight_person(add_face, persons, validator):
    add_face("a1", face_vec(e0=1.0))
    add_face("a2", face_vec(e0=0.8, e1=0.6))
    pid = _person(persons, ["a1", "a2"])
    assert validator.intra_cluster_similarity(pid) == pytest.approx(0.8, abs=1e-6)


def test_intra_similarity_needs_two_vectors(add_face, persons, validator):
    add_face("s1", face_vec(e0=1.0))
    pid = _person(persons, ["s1"])
    assert validator.intra_cluster_similarity(pid) is None


def test_low_confidence_and_ambiguous_flags(add_face, persons, validator):
    # tight person
    add_face("a1", face_vec(e0=1.0))
    add_face("a2", face_vec(e0=0.9, e1=np.sqrt(0.19)))
    # loose person
    add_face("b1", face_vec(e2=1.0))
    add_face("b2", face_vec(e3=1.0))
    # close to the tight person
    add_face("c1", face_vec(e0=0.95, e1=np.sqrt(1 - 0.95 ** 2)))
    add_face("c2", face_vec(e0=1.0))
    a = _person(persons, ["a1", "a2"])
    b = _person(persons, ["b1", "b2"])
    c = _person(persons, ["c1", "c2"])

    report = validator.validate()
    by_id = {p.person_id: p for p in report.persons}
    assert not by_id[a].low_confidence
    assert by_id[b].low_confidence
    assert by_id[b].intra_similarity == pytest.approx(0.0, abs=1e-6)
    assert report.low_confidence_count == 1
    assert report.passed == 2
    assert report.failed == 1
    assert report.skipped == 0
    assert report.ambiguous_count == 1
    assert (report.ambiguous_pairs[0].person_a, report.ambiguous_pairs[0].person_b) == (a, c)
    assert report.same_person_avg > 0.5
    assert any("manual review" in note for note in report.recommendations)
    assert any("merging" in note for note in report.recommendations)


def test_inter_similarity_samples_first_members(add_face, persons, repository):
    add_face("a1", face_vec(e0=1.0))
    add_face("a2", face_vec(e1=1.0))
    add_face("b1", face_vec(e0=1.0))
    a = _person(persons, ["a1", "a2"])
    b = _person(persons, ["b1"])
    one = ClusterQualityValidator(persons, repository, pair_sample_size=1)
    assert one.inter_cluster_similarity(a, b) == pytest.approx(1.0)
    two = ClusterQualityValidator(persons, repository, pair_sample_size=2)
    assert two.inter_cluster_similarity(a, b) == pytest.approx(0.5)


def test_empty_library_report(validator):
    report = validator.validate()
    assert report.persons == []
    assert report.pass_rate == 0.0
    assert report.recommendations == ["No issues found."]


def test_report_frames(add_face, persons, validator):
    add_face("a1", face_vec(e0=1.0))
    add_face("a2", face_vec(e0=1.0))
    add_face("s1", face_vec(e1=1.0))
    tight = _person(persons, ["a1", "a2"])
    single = _person(persons, ["s1"])
    df = validator.validate().to_frame()
    assert isinstance(df, pd.DataFrame)
    assert list(df["person_id"]) == [tight, single]
    assert pd.isna(df.loc[1, "intra_similarity"])
    assert list(validator.validate().pairs_frame().columns) == ["person_a", "person_b", "similarity"]


def test_check_vector_dimensions(repository, validator):
    repository.put("f1", "face", face_vec(e0=1.0), 1)
    repository.put("p1", "semantic", np.ones(512), 1)
    counts = validator.check_vector_dimensions()
    assert counts == {"face": {"valid": 1, "invalid": 0}, "semantic": {"valid": 1, "invalid": 0}}
