"""
Face detections and the Person groupings built on top of them.

A face belongs to at most one Person.  The ``faces.person_id`` column is the
single source of membership, so the invariant holds at the storage level;
:meth:`PersonStore.assign_face` additionally refuses to silently move a face
that is already attached elsewhere and raises :class:`DuplicateAssignment`.
Moving a face is an explicit detach-then-attach (:meth:`PersonStore.move_face`).
Every membership change keeps ``persons.face_count`` in step.
"""

from __future__ import annotations

import datetime as _dt
import functools
import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np
from sqlalchemy import and_, delete, func, insert, select, update
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from .db import EMBEDDINGS, FACES, PERSONS, SEQUENCES, blob_to_vector, utcnow
from .errors import DuplicateAssignment, NotFound, RepositoryUnavailable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BoundingBox:
    x: float
    y: float
    width: float
    height: float


@dataclass
class FaceDetection:
    id: str
    photo_id: str
    bounding_box: BoundingBox
    confidence: Optional[float] = None
    person_id: Optional[int] = None
    vector_version: Optional[int] = None
    face_embedding: Optional[np.ndarray] = None
    semantic_embedding: Optional[np.ndarray] = None


@dataclass
class Person:
    id: int
    label: str
    member_face_ids: List[str] = field(default_factory=list)
    face_count: int = 0
    is_manual: bool = False
    created_at: Optional[_dt.datetime] = None


def _guard(fn):
    """Translate store errors into :class:`RepositoryUnavailable`."""
    @functools.wraps(fn)
    def wrapper(*args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except SQLAlchemyError as exc:
            raise RepositoryUnavailable(str(exc)) from exc
    return wrapper


class PersonStore:
    """CRUD for faces and Persons plus the membership operations."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    # -- faces --

    @_guard
    def add_face(self, face_id: str, photo_id: str, bounding_box: BoundingBox,
                 confidence: Optional[float] = None) -> None:
        with self.engine.begin() as conn:
            conn.execute(insert(FACES).values(
                id=face_id,
                photo_id=photo_id,
                bbox_x=bounding_box.x,
                bbox_y=bounding_box.y,
                bbox_width=bounding_box.width,
                bbox_height=bounding_box.height,
                confidence=confidence,
            ))

    @_guard
    def get_face(self, face_id: str, with_embeddings: bool = False) -> FaceDetection:
        with self.engine.connect() as conn:
            row = conn.execute(select(FACES).where(FACES.c.id == face_id)).mappings().first()
            if row is None:
                raise NotFound(f"face {face_id} does not exist")
            vectors = {
                r.vector_type: r for r in conn.execute(
                    select(EMBEDDINGS.c.vector_type, EMBEDDINGS.c.vector, EMBEDDINGS.c.version)
                    .where(EMBEDDINGS.c.entity_id == face_id)
                )
            }
        face = FaceDetection(
            id=row["id"],
            photo_id=row["photo_id"],
            bounding_box=BoundingBox(row["bbox_x"], row["bbox_y"], row["bbox_width"], row["bbox_height"]),
            confidence=row["confidence"],
            person_id=row["person_id"],
            vector_version=vectors["face"].version if "face" in vectors else None,
        )
        if with_embeddings:
            if "face" in vectors:
                face.face_embedding = blob_to_vector(vectors["face"].vector)
            if "semantic" in vectors:
                face.semantic_embedding = blob_to_vector(vectors["semantic"].vector)
        return face

    @_guard
    def known_face_ids(self, face_ids: Optional[Iterable[str]] = None) -> set:
        query = select(FACES.c.id)
        if face_ids is not None:
            query = query.where(FACES.c.id.in_(list(face_ids)))
        with self.engine.connect() as conn:
            return {r.id for r in conn.execute(query)}

    @_guard
    def delete_face(self, face_id: str) -> None:
        """Delete a face, its vectors, and its membership."""
        with self.engine.begin() as conn:
            person_id = conn.execute(select(FACES.c.person_id).where(FACES.c.id == face_id)).scalar()
            conn.execute(delete(EMBEDDINGS).where(EMBEDDINGS.c.entity_id == face_id))
            conn.execute(delete(FACES).where(FACES.c.id == face_id))
            if person_id is not None:
                self._refresh_count(conn, person_id)

    # -- persons --

    @staticmethod
    def _next_sequence(conn: Connection) -> int:
        current = conn.execute(select(SEQUENCES.c.value).where(SEQUENCES.c.name == "person")).scalar()
        if current is None:
            current = conn.execute(select(func.max(PERSONS.c.sequence))).scalar() or 0
            conn.execute(insert(SEQUENCES).values(name="person", value=current))
        value = int(current) + 1
        conn.execute(update(SEQUENCES).where(SEQUENCES.c.name == "person").values(value=value))
        return value

    def _create_person(self, conn: Connection, label: Optional[str], is_manual: bool) -> Tuple[int, str]:
        sequence = None
        if label is None:
            sequence = self._next_sequence(conn)
            label = f"Person {sequence}"
        result = conn.execute(insert(PERSONS).values(
            label=label,
            sequence=sequence,
            face_count=0,
            is_manual=is_manual,
            created_at=utcnow(),
        ))
        return int(result.inserted_primary_key[0]), label

    @_guard
    def create_person(self, label: Optional[str] = None, is_manual: bool = True) -> int:
        """Create a Person and return its id.

        Without a label the next sequential ``Person N`` label is used.
        """
        with self.engine.begin() as conn:
            person_id, label = self._create_person(conn, label, is_manual)
        logger.info("Created person %s (id %d)", label, person_id)
        return person_id

    def _load_person(self, conn: Connection, row) -> Person:
        members = [r.id for r in conn.execute(
            select(FACES.c.id).where(FACES.c.person_id == row["id"])
            .order_by(FACES.c.member_position, FACES.c.id)
        )]
        return Person(
            id=row["id"],
            label=row["label"],
            member_face_ids=members,
            face_count=row["face_count"],
            is_manual=bool(row["is_manual"]),
            created_at=row["created_at"],
        )

    @_guard
    def get_person(self, person_id: int) -> Person:
        with self.engine.connect() as conn:
            row = conn.execute(select(PERSONS).where(PERSONS.c.id == person_id)).mappings().first()
            if row is None:
                raise NotFound(f"person {person_id} does not exist")
            return self._load_person(conn, row)

    @_guard
    def list_persons(self) -> List[Person]:
        with self.engine.connect() as conn:
            rows = conn.execute(select(PERSONS).order_by(PERSONS.c.id)).mappings().all()
            return [self._load_person(conn, r) for r in rows]

    @_guard
    def membership(self) -> Dict[str, int]:
        """Map every assigned face id to its person id."""
        with self.engine.connect() as conn:
            rows = conn.execute(select(FACES.c.id, FACES.c.person_id).where(FACES.c.person_id.is_not(None)))
            return {r.id: r.person_id for r in rows}

    @_guard
    def rename_person(self, person_id: int, label: str) -> None:
        with self.engine.begin() as conn:
            result = conn.execute(
                update(PERSONS).where(PERSONS.c.id == person_id).values(label=label, updated_at=utcnow())
            )
            if result.rowcount == 0:
                raise NotFound(f"person {person_id} does not exist")

    @_guard
    def delete_person(self, person_id: int) -> int:
        """Delete a Person, clearing ``person_id`` on its faces.

        Returns the number of faces that were detached.
        """
        with self.engine.begin() as conn:
            if conn.execute(select(PERSONS.c.id).where(PERSONS.c.id == person_id)).first() is None:
                raise NotFound(f"person {person_id} does not exist")
            detached = conn.execute(
                update(FACES).where(FACES.c.person_id == person_id)
                .values(person_id=None, member_position=None)
            ).rowcount
            conn.execute(delete(PERSONS).where(PERSONS.c.id == person_id))
        logger.info("Deleted person %d (%d faces detached)", person_id, detached)
        return detached

    @_guard
    def cleanup_empty_persons(self) -> int:
        """Delete every Person without faces; return how many were removed."""
        with self.engine.begin() as conn:
            deleted = self.remove_empty(conn)
        if deleted:
            logger.info("Removed %d empty person(s)", deleted)
        return deleted

    @staticmethod
    def remove_empty(conn: Connection, automatic_only: bool = False) -> int:
        """Delete Persons without faces inside an open transaction."""
        occupied = select(FACES.c.person_id).where(FACES.c.person_id.is_not(None))
        stmt = delete(PERSONS).where(PERSONS.c.id.not_in(occupied))
        if automatic_only:
            stmt = stmt.where(PERSONS.c.is_manual.is_(False))
        return conn.execute(stmt).rowcount

    # -- membership --

    @staticmethod
    def _refresh_count(conn: Connection, person_id: int) -> None:
        count = conn.execute(
            select(func.count()).select_from(FACES).where(FACES.c.person_id == person_id)
        ).scalar_one()
        conn.execute(update(PERSONS).where(PERSONS.c.id == person_id)
                     .values(face_count=count, updated_at=utcnow()))

    @staticmethod
    def _face_owner(conn: Connection, face_id: str) -> Optional[int]:
        row = conn.execute(select(FACES.c.person_id).where(FACES.c.id == face_id)).first()
        if row is None:
            raise NotFound(f"face {face_id} does not exist")
        return row.person_id

    def _attach(self, conn: Connection, face_id: str, person_id: int) -> None:
        position = conn.execute(
            select(func.max(FACES.c.member_position)).where(FACES.c.person_id == person_id)
        ).scalar()
        conn.execute(update(FACES).where(FACES.c.id == face_id).values(
            person_id=person_id,
            member_position=0 if position is None else position + 1,
        ))

    def _detach(self, conn: Connection, face_id: str) -> None:
        conn.execute(update(FACES).where(FACES.c.id == face_id).values(person_id=None, member_position=None))

    @_guard
    def assign_face(self, face_id: str, person_id: int) -> None:
        """Attach an unassigned face to a Person.

        Raises
        ------
        DuplicateAssignment
            If the face already belongs to a different Person.
        NotFound
            If the face or the Person does not exist.
        """
        with self.engine.begin() as conn:
            if conn.execute(select(PERSONS.c.id).where(PERSONS.c.id == person_id)).first() is None:
                raise NotFound(f"person {person_id} does not exist")
            owner = self._face_owner(conn, face_id)
            if owner == person_id:
                return
            if owner is not None:
                raise DuplicateAssignment(face_id, owner, person_id)
            self._attach(conn, face_id, person_id)
            self._refresh_count(conn, person_id)

    @_guard
    def unassign_face(self, face_id: str) -> Optional[int]:
        """Detach a face from its Person; return the former person id."""
        with self.engine.begin() as conn:
            owner = self._face_owner(conn, face_id)
            if owner is not None:
                self._detach(conn, face_id)
                self._refresh_count(conn, owner)
            return owner

    @_guard
    def move_face(self, face_id: str, target_person_id: Optional[int] = None,
                  new_label: Optional[str] = None) -> int:
        """Move a face to another Person, creating one if no target is given.

        The face is removed from its current Person before it is added to the
        target, in the same transaction.  Returns the target person id.
        """
        with self.engine.begin() as conn:
            owner = self._face_owner(conn, face_id)
            if target_person_id is None:
                target_person_id, _ = self._create_person(conn, new_label, is_manual=True)
            elif conn.execute(select(PERSONS.c.id).where(PERSONS.c.id == target_person_id)).first() is None:
                raise NotFound(f"person {target_person_id} does not exist")
            if owner == target_person_id:
                return target_person_id
            if owner is not None:
                self._detach(conn, face_id)
                self._refresh_count(conn, owner)
            self._attach(conn, face_id, target_person_id)
            self._refresh_count(conn, target_person_id)
        return target_person_id

    @_guard
    def merge_persons(self, target_person_id: int, source_person_id: int) -> int:
        """Move every face of ``source`` into ``target`` and delete ``source``.

        Returns the number of faces moved.
        """
        if target_person_id == source_person_id:
            return 0
        with self.engine.begin() as conn:
            for pid in (target_person_id, source_person_id):
                if conn.execute(select(PERSONS.c.id).where(PERSONS.c.id == pid)).first() is None:
                    raise NotFound(f"person {pid} does not exist")
            faces = [r.id for r in conn.execute(
                select(FACES.c.id).where(FACES.c.person_id == source_person_id)
                .order_by(FACES.c.member_position, FACES.c.id)
            )]
            for face_id in faces:
                self._detach(conn, face_id)
                self._attach(conn, face_id, target_person_id)
            conn.execute(delete(PERSONS).where(PERSONS.c.id == source_person_id))
            self._refresh_count(conn, target_person_id)
        logger.info("Merged person %d into %d (%d faces)", source_person_id, target_person_id, len(faces))
        return len(faces)

    def apply_clusters(self, conn: Connection, assignments: Sequence[Tuple[Optional[int], List[str]]],
                       managed_face_ids: Iterable[str]) -> List[int]:
        """Rewrite automatic membership inside an open transaction.

        ``assignments`` pairs an existing person id (or ``None`` for a new
        Person) with its ordered members.  Every face in ``managed_face_ids``
        is detached first, so no face is ever attached to two Persons, then
        the members are attached in order.  Returns the person ids in the
        order of ``assignments``.
        """
        managed = list(managed_face_ids)
        touched = set(r.person_id for r in conn.execute(
            select(FACES.c.person_id).where(and_(FACES.c.id.in_(managed), FACES.c.person_id.is_not(None)))
        ))
        conn.execute(update(FACES).where(FACES.c.id.in_(managed))
                     .values(person_id=None, member_position=None))
        person_ids: List[int] = []
        for person_id, members in assignments:
            if person_id is None:
                person_id, label = self._create_person(conn, None, is_manual=False)
                logger.info("Created %s with %d faces", label, len(members))
            for position, face_id in enumerate(members):
                conn.execute(update(FACES).where(FACES.c.id == face_id)
                             .values(person_id=person_id, member_position=position))
            person_ids.append(person_id)
            touched.add(person_id)
        for person_id in touched:
            self._refresh_count(conn, person_id)
        return person_ids

    @_guard
    def member_vectors(self, person_id: int, vector_type: str = "face",
                       limit: Optional[int] = None) -> Tuple[List[str], np.ndarray]:
        """Return the person's face ids (member order) that have a vector,
        and those vectors stacked as a matrix."""
        query = (
            select(FACES.c.id, EMBEDDINGS.c.vector)
            .join(EMBEDDINGS, and_(EMBEDDINGS.c.entity_id == FACES.c.id,
                                   EMBEDDINGS.c.vector_type == vector_type))
            .where(FACES.c.person_id == person_id)
            .order_by(FACES.c.member_position, FACES.c.id)
        )
        if limit is not None:
            query = query.limit(limit)
        with self.engine.connect() as conn:
            rows = conn.execute(query).all()
        ids = [r.id for r in rows]
        if not rows:
            return ids, np.zeros((0, 0), dtype=np.float32)
        return ids, np.vstack([blob_to_vector(r.vector) for r in rows])
