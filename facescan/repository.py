"""
Persistence for pictures, face scans, faces and people.

The pipeline only depends on the Repository protocol. SqlRepository is the
SQLite implementation, written with SQLAlchemy Core. All access goes
through one engine guarded by a lock, and every operation commits its own
transaction. detected_at and recognized_at come from one strictly
increasing clock read inside that lock, so timestamp order matches commit
order.
"""
from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence, Union

from sqlalchemy import (
    Boolean, Column, DateTime, Float, ForeignKey, Integer, MetaData, String, Table,
    UniqueConstraint, create_engine, delete, func, select, update,
)
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.pool import StaticPool

from facescan.model import (
    DetectedFace, Face, FaceDetectionCandidate, FaceId, FaceScan, Person,
    PersonForRecognition, PersonId, PictureId, Point, Rect,
)

logger = logging.getLogger(__name__)


class Repository(Protocol):
    """Operations the detection and recognition tasks need."""

    def find_need_face_scan(self) -> List[FaceDetectionCandidate]: ...

    def get_face_detection_candidate(self, picture_id: PictureId) -> Optional[FaceDetectionCandidate]: ...

    def delete_faces(self, picture_id: PictureId) -> None: ...

    def add_face_scans(self, picture_id: PictureId, faces: Sequence[Face]) -> List[FaceId]: ...

    def mark_face_scan_broken(self, picture_id: PictureId) -> None: ...

    def find_people_for_recognition(self) -> List[PersonForRecognition]: ...

    def find_unknown_faces(self, detected_after: Optional[datetime] = None) -> List[DetectedFace]: ...

    def mark_as_person_unconfirmed(self, face_id: FaceId, person_id: PersonId) -> None: ...

    def mark_face_recognition_complete(self, person_id: PersonId) -> None: ...


# =============================================================================
# Schema
# =============================================================================

_POINTS = ('right_eye', 'left_eye', 'nose', 'right_mouth_corner', 'left_mouth_corner',
           'mouth', 'right_ear', 'left_ear')


def _make_metadata() -> MetaData:
    """Define and return SQLAlchemy metadata with our table definitions."""
    metadata = MetaData()
    Table(
        "pictures", metadata,
        Column("picture_id", Integer, primary_key=True, autoincrement=True),
        Column("path", String, nullable=False, unique=True),
    )
    Table(
        "pictures_face_scans", metadata,
        Column("picture_id", Integer, ForeignKey("pictures.picture_id"), primary_key=True),
        Column("is_broken", Boolean, nullable=False, default=False),
        Column("face_count", Integer, nullable=False, default=0),
        Column("scan_ts", DateTime, nullable=False),
    )
    Table(
        "people", metadata,
        Column("person_id", Integer, primary_key=True, autoincrement=True),
        Column("name", String, nullable=False),
        Column("thumbnail_path", String, nullable=True),
        Column("recognized_at", DateTime, nullable=True),
    )
    point_columns = []
    for name in _POINTS:
        point_columns.append(Column(f"{name}_x", Float, nullable=True))
        point_columns.append(Column(f"{name}_y", Float, nullable=True))
    Table(
        "pictures_faces", metadata,
        Column("face_id", Integer, primary_key=True, autoincrement=True),
        Column("picture_id", Integer, ForeignKey("pictures.picture_id"), nullable=False),
        Column("bounds_path", String, nullable=False),
        Column("thumbnail_path", String, nullable=False),
        Column("bounds_x", Float, nullable=False),
        Column("bounds_y", Float, nullable=False),
        Column("bounds_width", Float, nullable=False),
        Column("bounds_height", Float, nullable=False),
        *point_columns,
        Column("confidence", Float, nullable=False),
        Column("model_name", String, nullable=False),
        Column("person_id", Integer, ForeignKey("people.person_id"), nullable=True),
        Column("is_confirmed", Boolean, nullable=False, default=False),
        Column("is_ignored", Boolean, nullable=False, default=False),
        Column("is_thumbnail", Boolean, nullable=False, default=False),
        Column("detected_at", DateTime, nullable=False),
        UniqueConstraint("bounds_path"),
    )
    return metadata


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class _MonotonicClock:
    """Wall clock that never returns the same or an earlier value twice."""

    def __init__(self, source: Callable[[], datetime] = _utcnow):
        self._source = source
        self._last: Optional[datetime] = None

    def now(self) -> datetime:
        current = self._source()
        if self._last is not None and current <= self._last:
            current = self._last + timedelta(microseconds=1)
        self._last = current
        return current


def _point(row: Any, name: str) -> Optional[Point]:
    x = row[f"{name}_x"]
    y = row[f"{name}_y"]
    if x is None or y is None:
        return None
    return (x, y)


def _point_values(face: Face) -> Dict[str, Optional[float]]:
    values = {}
    for name in _POINTS:
        point = getattr(face, name)
        values[f"{name}_x"] = None if point is None else float(point[0])
        values[f"{name}_y"] = None if point is None else float(point[1])
    return values


# =============================================================================
# SQLite repository
# =============================================================================

class SqlRepository:
    """
    SQLite-backed repository.

    Parameters
    ----------
    db_path:
        SQLite file. ``None`` keeps the database in memory.
    clock:
        Source of wall-clock time, wrapped to be strictly increasing.
    """

    def __init__(self, db_path: Optional[Union[str, Path]] = None,
                 clock: Optional[Callable[[], datetime]] = None):
        if db_path is None:
            self.engine: Engine = create_engine(
                "sqlite://",
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        else:
            self.engine = create_engine(
                f"sqlite:///{db_path}",
                connect_args={"check_same_thread": False},
            )
        self.metadata = _make_metadata()
        self.metadata.create_all(self.engine)
        self.pictures = self.metadata.tables["pictures"]
        self.face_scans = self.metadata.tables["pictures_face_scans"]
        self.faces = self.metadata.tables["pictures_faces"]
        self.people = self.metadata.tables["people"]

        self._lock = threading.Lock()
        self._clock = _MonotonicClock(clock or _utcnow)

    def _begin(self):
        return self.engine.begin()

    # =========================================================================
    # Pictures and scans
    # =========================================================================

    def add_picture(self, path: Union[str, Path]) -> PictureId:
        with self._lock, self._begin() as conn:
            result = conn.execute(self.pictures.insert().values(path=str(path)))
            return PictureId(result.inserted_primary_key[0])

    def find_need_face_scan(self) -> List[FaceDetectionCandidate]:
        """Pictures that have never been scanned. Broken scans are not retried."""
        stmt = (
            select(self.pictures.c.picture_id, self.pictures.c.path)
            .select_from(self.pictures.outerjoin(
                self.face_scans, self.pictures.c.picture_id == self.face_scans.c.picture_id))
            .where(self.face_scans.c.picture_id.is_(None))
            .order_by(self.pictures.c.picture_id)
        )
        with self._lock, self._begin() as conn:
            rows = conn.execute(stmt).all()
        return [FaceDetectionCandidate(PictureId(r.picture_id), Path(r.path)) for r in rows]

    def get_face_detection_candidate(self, picture_id: PictureId) -> Optional[FaceDetectionCandidate]:
        stmt = select(self.pictures.c.picture_id, self.pictures.c.path).where(
            self.pictures.c.picture_id == int(picture_id))
        with self._lock, self._begin() as conn:
            row = conn.execute(stmt).first()
        if row is None:
            return None
        return FaceDetectionCandidate(PictureId(row.picture_id), Path(row.path))

    def get_face_scan(self, picture_id: PictureId) -> Optional[FaceScan]:
        stmt = select(self.face_scans).where(self.face_scans.c.picture_id == int(picture_id))
        with self._lock, self._begin() as conn:
            row = conn.execute(stmt).mappings().first()
        if row is None:
            return None
        return FaceScan(PictureId(row["picture_id"]), bool(row["is_broken"]),
                        int(row["face_count"]), row["scan_ts"])

    def _upsert_scan(self, conn: Connection, picture_id: PictureId, is_broken: bool, face_count: int) -> None:
        now = self._clock.now()
        stmt = sqlite_insert(self.face_scans).values(
            picture_id=int(picture_id), is_broken=is_broken, face_count=face_count, scan_ts=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[self.face_scans.c.picture_id],
            set_={"is_broken": is_broken, "face_count": face_count, "scan_ts": now},
        )
        conn.execute(stmt)

    def delete_faces(self, picture_id: PictureId) -> None:
        with self._lock, self._begin() as conn:
            conn.execute(delete(self.faces).where(self.faces.c.picture_id == int(picture_id)))

    def add_face_scans(self, picture_id: PictureId, faces: Sequence[Face]) -> List[FaceId]:
        """Record a successful scan and store its faces in one transaction.

        Each face gets its own, strictly later, detected_at.
        """
        face_ids = []
        with self._lock, self._begin() as conn:
            self._upsert_scan(conn, picture_id, False, len(faces))
            for face in faces:
                values = dict(
                    picture_id=int(picture_id),
                    bounds_path=str(face.bounds_path),
                    thumbnail_path=str(face.thumbnail_path),
                    bounds_x=face.bounds.x,
                    bounds_y=face.bounds.y,
                    bounds_width=face.bounds.width,
                    bounds_height=face.bounds.height,
                    confidence=float(face.confidence),
                    model_name=face.model_name,
                    person_id=None if face.person_id is None else int(face.person_id),
                    is_confirmed=face.is_confirmed,
                    is_ignored=face.is_ignored,
                    detected_at=self._clock.now(),
                    **_point_values(face),
                )
                result = conn.execute(self.faces.insert().values(**values))
                face_ids.append(FaceId(result.inserted_primary_key[0]))
        return face_ids

    def mark_face_scan_broken(self, picture_id: PictureId) -> None:
        with self._lock, self._begin() as conn:
            self._upsert_scan(conn, picture_id, True, 0)

    # =========================================================================
    # Faces
    # =========================================================================

    def _to_detected_face(self, row: Any) -> DetectedFace:
        return DetectedFace(
            face_id=FaceId(row["face_id"]),
            picture_id=PictureId(row["picture_id"]),
            face_path=Path(row["bounds_path"]),
            thumbnail_path=Path(row["thumbnail_path"]),
            detected_at=row["detected_at"],
            bounds=Rect(row["bounds_x"], row["bounds_y"], row["bounds_width"], row["bounds_height"]),
            confidence=row["confidence"],
            **{name: _point(row, name) for name in _POINTS},
        )

    def _to_face(self, row: Any) -> Face:
        return Face(
            picture_id=PictureId(row["picture_id"]),
            bounds=Rect(row["bounds_x"], row["bounds_y"], row["bounds_width"], row["bounds_height"]),
            thumbnail_path=Path(row["thumbnail_path"]),
            bounds_path=Path(row["bounds_path"]),
            confidence=row["confidence"],
            model_name=row["model_name"],
            face_id=FaceId(row["face_id"]),
            person_id=None if row["person_id"] is None else PersonId(row["person_id"]),
            is_confirmed=bool(row["is_confirmed"]),
            is_ignored=bool(row["is_ignored"]),
            detected_at=row["detected_at"],
            **{name: _point(row, name) for name in _POINTS},
        )

    def find_faces(self, picture_id: PictureId) -> List[Face]:
        """Faces of a picture that are not ignored, left to right by nose position."""
        stmt = (
            select(self.faces)
            .where(self.faces.c.picture_id == int(picture_id))
            .where(self.faces.c.is_ignored.is_(False))
            .order_by(self.faces.c.nose_x, self.faces.c.nose_y, self.faces.c.face_id)
        )
        with self._lock, self._begin() as conn:
            rows = conn.execute(stmt).mappings().all()
        return [self._to_face(r) for r in rows]

    def find_unknown_faces(self, detected_after: Optional[datetime] = None) -> List[DetectedFace]:
        """Faces with no person that are not ignored, optionally only those detected after a watermark."""
        stmt = (
            select(self.faces)
            .where(self.faces.c.person_id.is_(None))
            .where(self.faces.c.is_ignored.is_(False))
            .order_by(self.faces.c.detected_at)
        )
        if detected_after is not None:
            stmt = stmt.where(self.faces.c.detected_at > detected_after)
        with self._lock, self._begin() as conn:
            rows = conn.execute(stmt).mappings().all()
        return [self._to_detected_face(r) for r in rows]

    def find_people_for_recognition(self) -> List[PersonForRecognition]:
        """Each person with their highest confidence confirmed face."""
        stmt = (
            select(self.faces, self.people.c.recognized_at)
            .select_from(self.faces.join(self.people, self.faces.c.person_id == self.people.c.person_id))
            .where(self.faces.c.is_confirmed.is_(True))
            .order_by(self.faces.c.person_id, self.faces.c.confidence.desc(), self.faces.c.face_id)
        )
        with self._lock, self._begin() as conn:
            rows = conn.execute(stmt).mappings().all()

        people = []
        seen = set()
        for row in rows:
            if row["person_id"] in seen:
                continue
            seen.add(row["person_id"])
            people.append(PersonForRecognition(
                person_id=PersonId(row["person_id"]),
                recognized_at=row["recognized_at"],
                face=self._to_detected_face(row),
            ))
        return people

    def find_pictures_for_person(self, person_id: PersonId) -> List[PictureId]:
        stmt = (
            select(self.faces.c.picture_id).distinct()
            .where(self.faces.c.person_id == int(person_id))
            .order_by(self.faces.c.picture_id)
        )
        with self._lock, self._begin() as conn:
            return [PictureId(r.picture_id) for r in conn.execute(stmt)]

    def _update_face(self, face_id: FaceId, **values) -> None:
        with self._lock, self._begin() as conn:
            conn.execute(update(self.faces).where(self.faces.c.face_id == int(face_id)).values(**values))

    def mark_as_person_unconfirmed(self, face_id: FaceId, person_id: PersonId) -> None:
        """Face recognition is automatically marking a face as a person."""
        self._update_face(face_id, person_id=int(person_id), is_confirmed=False, is_thumbnail=False)

    def mark_as_person(self, face_id: FaceId, person_id: PersonId) -> None:
        """User is manually marking a face as a person."""
        self._update_face(face_id, person_id=int(person_id), is_confirmed=True, is_ignored=False)

    def mark_not_person(self, face_id: FaceId) -> None:
        self._update_face(face_id, person_id=None, is_confirmed=False, is_thumbnail=False)

    def mark_ignore(self, face_id: FaceId) -> None:
        self._update_face(face_id, is_ignored=True, is_confirmed=False, is_thumbnail=False, person_id=None)

    def ignore_unknown_faces(self, picture_id: PictureId) -> None:
        with self._lock, self._begin() as conn:
            conn.execute(
                update(self.faces)
                .where(self.faces.c.picture_id == int(picture_id))
                .where(self.faces.c.person_id.is_(None))
                .values(is_ignored=True)
            )

    def restore_ignored_faces(self, picture_id: PictureId) -> None:
        with self._lock, self._begin() as conn:
            conn.execute(
                update(self.faces)
                .where(self.faces.c.picture_id == int(picture_id))
                .values(is_ignored=False)
            )

    # =========================================================================
    # People
    # =========================================================================

    def add_person(self, face_id: FaceId, name: str) -> Optional[PersonId]:
        """Create a named person from an unassigned face and confirm the face as theirs.

        Returns None when the face already belongs to someone (a repeated request).
        """
        with self._lock, self._begin() as conn:
            face = conn.execute(
                select(self.faces.c.person_id, self.faces.c.thumbnail_path)
                .where(self.faces.c.face_id == int(face_id))
            ).first()
            if face is None or face.person_id is not None:
                logger.warning("Detected double insert of person. Skipping.")
                return None

            result = conn.execute(self.people.insert().values(name=name, thumbnail_path=face.thumbnail_path))
            person_id = PersonId(result.inserted_primary_key[0])
            conn.execute(
                update(self.faces).where(self.faces.c.face_id == int(face_id))
                .values(person_id=int(person_id), is_confirmed=True, is_thumbnail=True, is_ignored=False)
            )
            return person_id

    def set_person_thumbnail(self, person_id: PersonId, face_id: FaceId) -> None:
        with self._lock, self._begin() as conn:
            result = conn.execute(
                update(self.faces)
                .where(self.faces.c.face_id == int(face_id))
                .where(self.faces.c.person_id == int(person_id))
                .values(is_confirmed=True, is_thumbnail=True, is_ignored=False)
            )
            if result.rowcount == 0:
                logger.warning("Face %s does not belong to person %s, thumbnail unchanged",
                               int(face_id), int(person_id))
                return
            conn.execute(
                update(self.faces)
                .where(self.faces.c.person_id == int(person_id))
                .where(self.faces.c.face_id != int(face_id))
                .values(is_thumbnail=False)
            )
            thumbnail_path = conn.execute(
                select(self.faces.c.thumbnail_path).where(self.faces.c.face_id == int(face_id))
            ).scalar()
            conn.execute(
                update(self.people).where(self.people.c.person_id == int(person_id))
                .values(thumbnail_path=thumbnail_path)
            )

    def mark_face_recognition_complete(self, person_id: PersonId) -> None:
        with self._lock, self._begin() as conn:
            conn.execute(
                update(self.people).where(self.people.c.person_id == int(person_id))
                .values(recognized_at=self._clock.now())
            )

    def _to_person(self, row: Any) -> Person:
        return Person(
            person_id=PersonId(row["person_id"]),
            name=row["name"],
            thumbnail_path=None if row["thumbnail_path"] is None else Path(row["thumbnail_path"]),
            recognized_at=row["recognized_at"],
        )

    def get_person(self, person_id: PersonId) -> Optional[Person]:
        with self._lock, self._begin() as conn:
            row = conn.execute(
                select(self.people).where(self.people.c.person_id == int(person_id))
            ).mappings().first()
        return None if row is None else self._to_person(row)

    def all_people(self) -> List[Person]:
        with self._lock, self._begin() as conn:
            rows = conn.execute(select(self.people).order_by(self.people.c.name)).mappings().all()
        return [self._to_person(r) for r in rows]

    def rename_person(self, person_id: PersonId, name: str) -> None:
        with self._lock, self._begin() as conn:
            conn.execute(
                update(self.people).where(self.people.c.person_id == int(person_id)).values(name=name)
            )

    def delete_person(self, person_id: PersonId) -> None:
        """Remove a person; their faces become unknown again."""
        with self._lock, self._begin() as conn:
            conn.execute(
                update(self.faces).where(self.faces.c.person_id == int(person_id))
                .values(person_id=None, is_confirmed=False, is_thumbnail=False)
            )
            conn.execute(delete(self.people).where(self.people.c.person_id == int(person_id)))

    def count_faces(self) -> int:
        with self._lock, self._begin() as conn:
            return int(conn.execute(select(func.count()).select_from(self.faces)).scalar())
