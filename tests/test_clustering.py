import math
import threading

import numpy as np
import pytest

from conftest import face_vec
from facesearch.clustering import ClusteringEngine, build_neighbour_graph, dbscan, match_existing
from facesearch.errors import ClusteringInProgress, JobAlreadyRunning
from facesearch.repository import VersionFilter

A = dict(e0=1.0)
B = dict(e0=0.8, e1=0.6)
# similarity 0.1 to both A and B
C = dict(e0=0.1, e1=1 / 30, e2=math.sqrt(1 - 0.01 - 1 / 900))


def test_neighbour_graph_is_symmetric_and_inclusive():
    vectors = np.vstack([face_vec(**A), face_vec(**B), face_vec(**C)])
    assert build_neighbour_graph(vectors, 0.75) == [[1], [0], []]
    same = np.vstack([face_vec(e0=2.0), face_vec(e0=1.0)])
    assert build_neighbour_graph(same, 1.0) == [[1], [0]]
    assert build_neighbour_graph(vectors[:0], 0.5) == []


def test_dbscan_pair_and_noise():
    vectors = np.vstack([face_vec(**C), face_vec(**A), face_vec(**B)])
    clusters, noise = dbscan(["c", "a", "b"], vectors, similarity_threshold=0.6, min_points=2)
    assert clusters == [["a", "b"]]
    assert noise == ["c"]


def test_dbscan_chains_through_core_points():
    # consecutive vectors 30 degrees apart: each touches only its neighbours
    angles = np.radians([0, 30, 60, 90])
    vectors = np.zeros((4, 128))
    vectors[:, 0] = np.cos(angles)
    vectors[:, 1] = np.sin(angles)
    clusters, noise = dbscan(["w", "x", "y", "z"], vectors, similarity_threshold=0.85, min_points=2)
    assert clusters == [["w", "x", "y", "z"]]
    assert noise == []


def test_dbscan_min_points_three_makes_pair_noise():
    vectors = np.vstack([face_vec(**A), face_vec(**B)])
    clusters, noise = dbscan(["a", "b"], vectors, similarity_threshold=0.6, min_points=3)
    assert clusters == []
    assert noise == ["a", "b"]


def test_dbscan_is_deterministic_under_input_order():
    rng = np.random.default_rng(7)
    centres = rng.normal(size=(3, 128))
    vectors = np.vstack([c + 0.05 * rng.normal(size=(5, 128)) for c in centres])
    ids = [f"f{i:02d}" for i in range(15)]
    first = dbscan(ids, vectors, 0.6, 2)
    perm = rng.permutation(15)
    second = dbscan([ids[i] for i in perm], vectors[perm], 0.6, 2)
    assert first == second
    assert len(first[0]) == 3
    members = [m for cluster in first[0] for m in cluster]
    assert len(members) == len(set(members))


def test_match_existing_prefers_largest_overlap():
    previous = {"a": 1, "b": 1, "c": 2, "d": 2, "e": 2}
    assert match_existing([["a", "c", "d"], ["b", "e"], ["x"]], previous) == [2, 1, None]


def test_match_existing_tie_goes_to_lower_id():
    assert match_existing([["a", "b"]], {"a": 5, "b": 3}) == [3]


def test_run_creates_person_for_pair(repository, persons, add_face):
    add_face("A", face_vec(**A))
    add_face("B", face_vec(**B))
    add_face("C", face_vec(**C))
    result = ClusteringEngine(repository, persons, 0.6, 2).run()
    assert result.clusters == [["A", "B"]]
    assert result.noise == ["C"]
    person = persons.get_person(result.person_ids[0])
    assert person.label == "Person 1"
    assert person.member_face_ids == ["A", "B"]
    assert persons.get_face("C").person_id is None


def test_rerun_is_stable(repository, persons, add_face):
    add_face("A", face_vec(**A))
    add_face("B", face_vec(**B))
    add_face("C", face_vec(**C))
    engine = ClusteringEngine(repository, persons)
    first = engine.run()
    second = engine.run()
    assert second.membership == first.membership
    assert second.reused == 1
    assert second.created == 0
    assert [p.label for p in persons.list_persons()] == ["Person 1"]


def test_rerun_detaches_new_noise_and_removes_empty_persons(repository, persons, add_face):
    add_face("A", face_vec(**A))
    add_face("B", face_vec(**B))
    engine = ClusteringEngine(repository, persons)
    engine.run()
    # B drifts away from A
    repository.put("B", "face", face_vec(e3=1.0), 2)
    result = engine.run()
    assert result.clusters == []
    assert result.removed_persons == 1
    assert persons.membership() == {}
    assert persons.list_persons() == []


def test_bridging_face_joins_two_persons(repository, persons, add_face):
    add_face("a", face_vec(e0=1.0))
    add_face("b", face_vec(e0=0.98, e1=0.199))
    add_face("y", face_vec(e1=1.0))
    add_face("z", face_vec(e0=0.199, e1=0.98))
    engine = ClusteringEngine(repository, persons, 0.7, 2)
    first = engine.run()
    assert first.clusters == [["a", "b"], ["y", "z"]]
    assert len(set(first.person_ids)) == 2
    # m is a neighbour of a and of y, which density-connects the two Persons
    add_face("m", face_vec(e0=math.sqrt(0.5), e1=math.sqrt(0.5)))
    second = engine.run()
    assert second.clusters == [["a", "b", "m", "y", "z"]]
    assert second.person_ids == [first.person_ids[0]]
    assert second.removed_persons == 1
    assert [p.id for p in persons.list_persons()] == [first.person_ids[0]]
    assert persons.membership() == {face: first.person_ids[0] for face in "abmyz"}

def test_manual_persons_are_left_alone(repository, persons, add_face):
    add_face("A", face_vec(**A))
    add_face("B", face_vec(**B))
    add_face("M", face_vec(e0=0.9, e1=0.1))
    manual = persons.create_person("Me", is_manual=True)
    persons.assign_face("M", manual)
    result = ClusteringEngine(repository, persons).run()
    assert result.clusters == [["A", "B"]]
    assert persons.get_person(manual).member_face_ids == ["M"]


def test_vectors_without_face_records_are_skipped(repository, persons, add_face):
    add_face("A", face_vec(**A))
    repository.put("orphan", "face", face_vec(**B), 1)
    result = ClusteringEngine(repository, persons).run()
    assert result.skipped_faces == ["orphan"]
    assert result.clusters == []


def test_version_filter_limits_input(repository, persons, add_face):
    add_face("A", face_vec(**A), version=2)
    add_face("B", face_vec(**B), version=1)
    result = ClusteringEngine(repository, persons).run(VersionFilter.equal(2))
    assert result.clusters == []
    assert result.noise == ["A"]


def test_concurrent_pass_is_rejected(repository, persons):
    engine = ClusteringEngine(repository, persons)
    started = threading.Event()
    release = threading.Event()
    original = engine._run

    def slow_run(version_filter):
        started.set()
        release.wait(5)
        return original(version_filter)

    engine._run = slow_run
    worker = threading.Thread(target=engine.run)
    worker.start()
    try:
        assert started.wait(5)
        with pytest.raises(ClusteringInProgress):
            engine.run()
        assert issubclass(ClusteringInProgress, JobAlreadyRunning)
    finally:
        release.set()
        worker.join(5)
