"""SQL detection store.

This module provides a SQLAlchemy implementation of DetectionStore. Any
SQLAlchemy URL works; by default a SQLite file is created under the data
home. Embeddings are stored as pickled numpy arrays in a BLOB column, lists
and bounding boxes as JSON strings.

Every table has an autoincrement ``seq`` primary key that fixes insertion
order, plus the opaque string ``id`` used by the rest of the system.
"""

from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, List, Optional, Set, Tuple
import json
import logging
import pickle

from sqlalchemy import (
    create_engine,
    Column,
    Integer,
    String,
    Float,
    Boolean,
    LargeBinary,
    DateTime,
    Text,
    Index as DBIndex,
    func
)
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from sqlalchemy.exc import SQLAlchemyError
import numpy as np

from ..errors import NotFound, PersistenceFailure
from ..models import (
    CLUSTER_UPDATABLE_FIELDS,
    BibDetection,
    BoundingBox,
    ClothingAttributes,
    ClothingItem,
    Event,
    EventEmbedding,
    FaceDetection,
    MatchFeedback,
    PersonCluster,
    Photo,
    ProcessingStatus,
    as_embedding,
    generate_id,
    utcnow,
)
from .base import DetectionStore, EVENT_UPDATABLE_FIELDS, validate_updates

logger = logging.getLogger(__name__)

Base = declarative_base()


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    """Re-attach UTC to datetimes read back from backends that drop tzinfo."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _box_to_json(box: BoundingBox) -> str:
    return json.dumps(box.to_dict())


def _box_from_json(data: str) -> BoundingBox:
    return BoundingBox.from_dict(json.loads(data))


class EventRow(Base):
    """Events table."""
    __tablename__ = 'events'

    seq = Column(Integer, primary_key=True, autoincrement=True)
    id = Column(String(64), nullable=False, unique=True)
    title = Column(String(512), nullable=False)
    description = Column(Text, nullable=True)
    location = Column(String(512), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    def to_record(self) -> Event:
        return Event(
            id=self.id,
            title=self.title,
            description=self.description,
            location=self.location,
            created_at=_utc(self.created_at),
            updated_at=_utc(self.updated_at),
        )


class PhotoRow(Base):
    """Photos table."""
    __tablename__ = 'photos'

    seq = Column(Integer, primary_key=True, autoincrement=True)
    id = Column(String(64), nullable=False, unique=True)
    event_id = Column(String(64), nullable=False, index=True)
    processing_status = Column(String(16), nullable=False, default=ProcessingStatus.PENDING.value)
    processing_error = Column(Text, nullable=True)
    original_url = Column(String(1024), nullable=False, default='')
    thumbnail_url = Column(String(1024), nullable=False, default='')
    uploaded_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    processed_at = Column(DateTime(timezone=True), nullable=True)

    def to_record(self) -> Photo:
        return Photo(
            id=self.id,
            event_id=self.event_id,
            processing_status=ProcessingStatus(self.processing_status),
            processing_error=self.processing_error,
            original_url=self.original_url,
            thumbnail_url=self.thumbnail_url,
            uploaded_at=_utc(self.uploaded_at),
            processed_at=_utc(self.processed_at),
        )


class FaceRow(Base):
    """Face detections table.

    The embedding is stored as a pickled numpy array.
    """
    __tablename__ = 'face_detections'

    seq = Column(Integer, primary_key=True, autoincrement=True)
    id = Column(String(64), nullable=False, unique=True)
    photo_id = Column(String(64), nullable=False, index=True)
    bounding_box = Column(String(256), nullable=False)  # JSON: {x, y, width, height}
    confidence = Column(Float, nullable=False)
    embedding = Column(LargeBinary, nullable=False)
    cluster_id = Column(String(64), nullable=True, index=True)
    cluster_confidence = Column(Float, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    def get_embedding(self) -> np.ndarray:
        """Deserialize embedding from BLOB."""
        return pickle.loads(self.embedding)

    def set_embedding(self, embedding: np.ndarray):
        """Serialize embedding to BLOB."""
        self.embedding = pickle.dumps(as_embedding(embedding))

    def to_record(self) -> FaceDetection:
        return FaceDetection(
            id=self.id,
            photo_id=self.photo_id,
            bounding_box=_box_from_json(self.bounding_box),
            confidence=self.confidence,
            embedding=self.get_embedding(),
            cluster_id=self.cluster_id,
            cluster_confidence=self.cluster_confidence,
            created_at=_utc(self.created_at),
        )


class ClusterRow(Base):
    """Person clusters table."""
    __tablename__ = 'person_clusters'

    seq = Column(Integer, primary_key=True, autoincrement=True)
    id = Column(String(64), nullable=False, unique=True)
    event_id = Column(String(64), nullable=False, index=True)
    representative_face_id = Column(String(64), nullable=True)
    representative_photo_id = Column(String(64), nullable=True)
    representative_thumbnail_url = Column(String(1024), nullable=True)
    display_name = Column(String(256), nullable=True)
    tags = Column(Text, nullable=False, default='[]')  # JSON list
    face_count = Column(Integer, nullable=False, default=0)
    photo_count = Column(Integer, nullable=False, default=0)
    claimed_by = Column(String(256), nullable=True)
    claimed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    def to_record(self) -> PersonCluster:
        return PersonCluster(
            id=self.id,
            event_id=self.event_id,
            representative_face_id=self.representative_face_id,
            representative_photo_id=self.representative_photo_id,
            representative_thumbnail_url=self.representative_thumbnail_url,
            display_name=self.display_name,
            tags=json.loads(self.tags) if self.tags else [],
            face_count=self.face_count,
            photo_count=self.photo_count,
            claimed_by=self.claimed_by,
            claimed_at=_utc(self.claimed_at),
            created_at=_utc(self.created_at),
            updated_at=_utc(self.updated_at),
        )


class ClothingRow(Base):
    """Clothing attributes table."""
    __tablename__ = 'clothing_attributes'

    seq = Column(Integer, primary_key=True, autoincrement=True)
    id = Column(String(64), nullable=False, unique=True)
    photo_id = Column(String(64), nullable=False, index=True)
    face_detection_id = Column(String(64), nullable=True)
    dominant_colors = Column(Text, nullable=False, default='[]')  # JSON list
    items = Column(Text, nullable=False, default='[]')  # JSON list of items
    descriptors = Column(Text, nullable=False, default='[]')  # JSON list
    confidence = Column(Float, nullable=False, default=0.0)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    def to_record(self) -> ClothingAttributes:
        return ClothingAttributes(
            id=self.id,
            photo_id=self.photo_id,
            face_detection_id=self.face_detection_id,
            dominant_colors=json.loads(self.dominant_colors),
            items=[ClothingItem.from_dict(item) for item in json.loads(self.items)],
            descriptors=json.loads(self.descriptors),
            confidence=self.confidence,
            created_at=_utc(self.created_at),
        )


class BibRow(Base):
    """Bib detections table."""
    __tablename__ = 'bib_detections'

    seq = Column(Integer, primary_key=True, autoincrement=True)
    id = Column(String(64), nullable=False, unique=True)
    photo_id = Column(String(64), nullable=False, index=True)
    face_detection_id = Column(String(64), nullable=True)
    bib_number = Column(String(64), nullable=False)
    bounding_box = Column(String(256), nullable=False)
    confidence = Column(Float, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    def to_record(self) -> BibDetection:
        return BibDetection(
            id=self.id,
            photo_id=self.photo_id,
            bib_number=self.bib_number,
            bounding_box=_box_from_json(self.bounding_box),
            confidence=self.confidence,
            face_detection_id=self.face_detection_id,
            created_at=_utc(self.created_at),
        )


class FeedbackRow(Base):
    """Match feedback table."""
    __tablename__ = 'match_feedback'

    seq = Column(Integer, primary_key=True, autoincrement=True)
    id = Column(String(64), nullable=False, unique=True)
    cluster_id = Column(String(64), nullable=False, index=True)
    event_id = Column(String(64), nullable=False, index=True)
    photo_id = Column(String(64), nullable=False)
    is_match = Column(Boolean, nullable=False)
    user_id = Column(String(256), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        DBIndex('idx_feedback_cluster_photo', 'cluster_id', 'photo_id'),
    )

    def to_record(self) -> MatchFeedback:
        return MatchFeedback(
            id=self.id,
            cluster_id=self.cluster_id,
            photo_id=self.photo_id,
            is_match=self.is_match,
            user_id=self.user_id,
            created_at=_utc(self.created_at),
        )


class SQLStore(DetectionStore):
    """Database-backed detection store.

    Manages all records in one SQLAlchemy database with support for:
    - Transaction management (one transaction per store call)
    - Cascading deletes of events, photos and clusters
    - Stable insertion order via the seq column
    """

    def __init__(
        self,
        db_path: Optional[str] = None,
        url: Optional[str] = None,
        echo: bool = False
    ):
        """Initialize SQL store.

        Args:
            db_path: Path to a SQLite database file
            url: Full SQLAlchemy URL; takes precedence over db_path
            echo: Log every SQL statement

        Raises:
            ValueError: If neither db_path nor url is given
        """
        if url is None:
            if db_path is None:
                raise ValueError("SQLStore needs either db_path or url")
            self.db_path = Path(db_path)
            # Create database directory if needed
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            url = f'sqlite:///{self.db_path}'
        else:
            self.db_path = None

        self.url = url
        connect_args = {'check_same_thread': False} if url.startswith('sqlite') else {}
        self.engine = create_engine(url, echo=echo, connect_args=connect_args)
        self.SessionLocal = sessionmaker(bind=self.engine, expire_on_commit=False)

        # Create tables
        Base.metadata.create_all(self.engine)

        logger.info(f"SQLStore initialized: {self.engine.url.render_as_string(hide_password=True)}")

    @contextmanager
    def session_scope(self):
        """Provide a transactional scope for database operations.

        Usage:
            with store.session_scope() as session:
                session.add(row)
                # Commit happens automatically on success
                # Rollback happens automatically on exception

        Raises:
            PersistenceFailure: If the database raises an error
        """
        session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Database error: {e}")
            raise PersistenceFailure(f"Database error: {e}", cause=e) from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # Row lookups

    @staticmethod
    def _row(session: Session, model, record_id: str):
        return session.query(model).filter(model.id == record_id).first()

    def _require_row(self, session: Session, model, kind: str, record_id: str):
        row = self._row(session, model, record_id)
        if row is None:
            raise NotFound(kind, record_id)
        return row

    # Events

    def create_event(
        self,
        title: str,
        event_id: Optional[str] = None,
        description: Optional[str] = None,
        location: Optional[str] = None
    ) -> Event:
        with self.session_scope() as session:
            event_id = event_id or generate_id()
            if self._row(session, EventRow, event_id) is not None:
                raise ValueError(f"Event already exists: {event_id}")
            row = EventRow(
                id=event_id,
                title=title,
                description=description,
                location=location
            )
            session.add(row)
            session.flush()
            event = row.to_record()

        logger.debug(f"Created event {event.id}")
        return event

    def get_event(self, event_id: str) -> Optional[Event]:
        with self.session_scope() as session:
            row = self._row(session, EventRow, event_id)
            return row.to_record() if row else None

    def list_events(self) -> List[Event]:
        with self.session_scope() as session:
            rows = session.query(EventRow).order_by(EventRow.seq).all()
            return [row.to_record() for row in rows]

    def update_event(self, event_id: str, **updates: Any) -> Event:
        validate_updates('event', updates, EVENT_UPDATABLE_FIELDS)
        with self.session_scope() as session:
            row = self._require_row(session, EventRow, 'event', event_id)
            for key, value in updates.items():
                setattr(row, key, value)
            row.updated_at = utcnow()
            session.flush()
            return row.to_record()

    def delete_event(self, event_id: str) -> bool:
        with self.session_scope() as session:
            row = self._row(session, EventRow, event_id)
            if row is None:
                return False

            cluster_ids = [
                cid for (cid,) in
                session.query(ClusterRow.id).filter(ClusterRow.event_id == event_id)
            ]
            # Feedback outlives its cluster, but not its event
            session.query(FeedbackRow).filter(
                FeedbackRow.event_id == event_id
            ).delete(synchronize_session=False)
            if cluster_ids:
                session.query(ClusterRow).filter(
                    ClusterRow.id.in_(cluster_ids)
                ).delete(synchronize_session=False)

            photo_ids = [
                pid for (pid,) in
                session.query(PhotoRow.id).filter(PhotoRow.event_id == event_id)
            ]
            if photo_ids:
                self._delete_detection_rows(session, photo_ids)
                session.query(PhotoRow).filter(
                    PhotoRow.id.in_(photo_ids)
                ).delete(synchronize_session=False)

            session.delete(row)

        logger.info(f"Deleted event {event_id}")
        return True

    # Photos

    def create_photo(
        self,
        event_id: str,
        original_url: str = '',
        thumbnail_url: str = ''
    ) -> Photo:
        with self.session_scope() as session:
            self._require_row(session, EventRow, 'event', event_id)
            row = PhotoRow(
                id=generate_id(),
                event_id=event_id,
                processing_status=ProcessingStatus.PENDING.value,
                original_url=original_url,
                thumbnail_url=thumbnail_url
            )
            session.add(row)
            session.flush()
            photo = row.to_record()

        logger.debug(f"Created photo {photo.id} in event {event_id}")
        return photo

    def get_photo(self, photo_id: str) -> Optional[Photo]:
        with self.session_scope() as session:
            row = self._row(session, PhotoRow, photo_id)
            return row.to_record() if row else None

    def get_photos_by_event(self, event_id: str) -> List[Photo]:
        with self.session_scope() as session:
            rows = session.query(PhotoRow).filter(
                PhotoRow.event_id == event_id
            ).order_by(PhotoRow.seq).all()
            return [row.to_record() for row in rows]

    def update_photo_status(
        self,
        photo_id: str,
        status: ProcessingStatus,
        error: Optional[str] = None
    ) -> Photo:
        status = ProcessingStatus(status)
        with self.session_scope() as session:
            row = self._require_row(session, PhotoRow, 'photo', photo_id)
            row.processing_status = status.value
            row.processing_error = error
            row.processed_at = utcnow() if status == ProcessingStatus.PROCESSED else None
            session.flush()
            return row.to_record()

    def delete_photo(self, photo_id: str) -> bool:
        with self.session_scope() as session:
            row = self._row(session, PhotoRow, photo_id)
            if row is None:
                return False
            self._delete_detection_rows(session, [photo_id])
            session.delete(row)

        logger.debug(f"Deleted photo {photo_id}")
        return True

    def delete_photo_detections(self, photo_id: str) -> Set[str]:
        with self.session_scope() as session:
            self._require_row(session, PhotoRow, 'photo', photo_id)
            affected = self._delete_detection_rows(session, [photo_id])

        logger.debug(f"Deleted detections of photo {photo_id}")
        return affected

    def _delete_detection_rows(self, session: Session, photo_ids: List[str]) -> Set[str]:
        affected = {
            cid for (cid,) in
            session.query(FaceRow.cluster_id).filter(
                FaceRow.photo_id.in_(photo_ids),
                FaceRow.cluster_id.isnot(None)
            )
        }
        for model in (FaceRow, ClothingRow, BibRow):
            session.query(model).filter(
                model.photo_id.in_(photo_ids)
            ).delete(synchronize_session=False)
        return affected

    # Face detections

    def create_face_detection(
        self,
        photo_id: str,
        bounding_box: BoundingBox,
        confidence: float,
        embedding: np.ndarray
    ) -> FaceDetection:
        with self.session_scope() as session:
            self._require_row(session, PhotoRow, 'photo', photo_id)
            row = FaceRow(
                id=generate_id(),
                photo_id=photo_id,
                bounding_box=_box_to_json(bounding_box),
                confidence=confidence
            )
            row.set_embedding(embedding)
            session.add(row)
            session.flush()
            return row.to_record()

    def get_face_detection(self, face_id: str) -> Optional[FaceDetection]:
        with self.session_scope() as session:
            row = self._row(session, FaceRow, face_id)
            return row.to_record() if row else None

    def get_face_detections_by_photo(self, photo_id: str) -> List[FaceDetection]:
        with self.session_scope() as session:
            rows = session.query(FaceRow).filter(
                FaceRow.photo_id == photo_id
            ).order_by(FaceRow.seq).all()
            return [row.to_record() for row in rows]

    def get_face_detections_by_cluster(self, cluster_id: str) -> List[FaceDetection]:
        with self.session_scope() as session:
            rows = session.query(FaceRow).filter(
                FaceRow.cluster_id == cluster_id
            ).order_by(FaceRow.seq).all()
            return [row.to_record() for row in rows]

    def update_face_cluster(
        self,
        face_id: str,
        cluster_id: str,
        confidence: float
    ) -> FaceDetection:
        with self.session_scope() as session:
            row = self._require_row(session, FaceRow, 'face', face_id)
            self._require_row(session, ClusterRow, 'cluster', cluster_id)
            row.cluster_id = cluster_id
            row.cluster_confidence = float(confidence)
            session.flush()
            return row.to_record()

    def clear_face_cluster(self, face_id: str) -> FaceDetection:
        with self.session_scope() as session:
            row = self._require_row(session, FaceRow, 'face', face_id)
            row.cluster_id = None
            row.cluster_confidence = None
            session.flush()
            return row.to_record()

    # Person clusters

    def create_cluster(
        self,
        event_id: str,
        representative_face_id: Optional[str] = None,
        representative_photo_id: Optional[str] = None,
        representative_thumbnail_url: Optional[str] = None,
        tags: Optional[Iterable[str]] = None
    ) -> PersonCluster:
        with self.session_scope() as session:
            self._require_row(session, EventRow, 'event', event_id)
            row = ClusterRow(
                id=generate_id(),
                event_id=event_id,
                representative_face_id=representative_face_id,
                representative_photo_id=representative_photo_id,
                representative_thumbnail_url=representative_thumbnail_url,
                tags=json.dumps(list(tags or [])),
                face_count=0,
                photo_count=0
            )
            session.add(row)
            session.flush()
            cluster = row.to_record()

        logger.debug(f"Created cluster {cluster.id} in event {event_id}")
        return cluster

    def get_cluster(self, cluster_id: str) -> Optional[PersonCluster]:
        with self.session_scope() as session:
            row = self._row(session, ClusterRow, cluster_id)
            return row.to_record() if row else None

    def get_clusters_by_event(self, event_id: str) -> List[PersonCluster]:
        with self.session_scope() as session:
            rows = session.query(ClusterRow).filter(
                ClusterRow.event_id == event_id
            ).order_by(ClusterRow.seq).all()
            return [row.to_record() for row in rows]

    def update_cluster(self, cluster_id: str, **updates: Any) -> PersonCluster:
        validate_updates('cluster', updates, CLUSTER_UPDATABLE_FIELDS)
        with self.session_scope() as session:
            row = self._require_row(session, ClusterRow, 'cluster', cluster_id)
            for key, value in updates.items():
                if key == 'tags':
                    value = json.dumps(list(value))
                setattr(row, key, value)
            row.updated_at = utcnow()
            session.flush()
            return row.to_record()

    def delete_cluster(self, cluster_id: str) -> bool:
        with self.session_scope() as session:
            row = self._row(session, ClusterRow, cluster_id)
            if row is None:
                return False

            # Member faces survive, unassigned
            session.query(FaceRow).filter(
                FaceRow.cluster_id == cluster_id
            ).update(
                {FaceRow.cluster_id: None, FaceRow.cluster_confidence: None},
                synchronize_session=False
            )
            session.delete(row)

        logger.debug(f"Deleted cluster {cluster_id}")
        return True

    def get_event_embeddings(self, event_id: str) -> List[EventEmbedding]:
        with self.session_scope() as session:
            rows = session.query(
                FaceRow.id, FaceRow.cluster_id, FaceRow.embedding
            ).join(
                PhotoRow, PhotoRow.id == FaceRow.photo_id
            ).filter(
                PhotoRow.event_id == event_id
            ).order_by(PhotoRow.seq, FaceRow.seq).all()

            return [
                EventEmbedding(
                    face_id=face_id,
                    cluster_id=cluster_id,
                    embedding=pickle.loads(blob)
                )
                for face_id, cluster_id, blob in rows
            ]

    def get_cluster_photos(
        self,
        cluster_id: str,
        limit: int = 50,
        offset: int = 0
    ) -> Tuple[List[Photo], int]:
        with self.session_scope() as session:
            # Distinct photos in the order their first face was linked
            first_seen = session.query(
                FaceRow.photo_id.label('photo_id'),
                func.min(FaceRow.seq).label('first_seq')
            ).filter(
                FaceRow.cluster_id == cluster_id
            ).group_by(FaceRow.photo_id).subquery()

            total = session.query(func.count()).select_from(first_seen).scalar() or 0

            rows = session.query(PhotoRow).join(
                first_seen, first_seen.c.photo_id == PhotoRow.id
            ).order_by(first_seen.c.first_seq).offset(offset).limit(limit).all()

            return [row.to_record() for row in rows], total

    # Clothing attributes

    def create_clothing_attributes(
        self,
        photo_id: str,
        dominant_colors: Iterable[str],
        items: Iterable[ClothingItem],
        descriptors: Iterable[str],
        confidence: float,
        face_detection_id: Optional[str] = None
    ) -> ClothingAttributes:
        with self.session_scope() as session:
            self._require_row(session, PhotoRow, 'photo', photo_id)
            row = ClothingRow(
                id=generate_id(),
                photo_id=photo_id,
                face_detection_id=face_detection_id,
                dominant_colors=json.dumps(list(dominant_colors)),
                items=json.dumps([item.to_dict() for item in items]),
                descriptors=json.dumps(list(descriptors)),
                confidence=confidence
            )
            session.add(row)
            session.flush()
            return row.to_record()

    def get_clothing_by_photo(self, photo_id: str) -> List[ClothingAttributes]:
        with self.session_scope() as session:
            rows = session.query(ClothingRow).filter(
                ClothingRow.photo_id == photo_id
            ).order_by(ClothingRow.seq).all()
            return [row.to_record() for row in rows]

    # Bib detections

    def create_bib_detection(
        self,
        photo_id: str,
        bib_number: str,
        bounding_box: BoundingBox,
        confidence: float,
        face_detection_id: Optional[str] = None
    ) -> BibDetection:
        with self.session_scope() as session:
            self._require_row(session, PhotoRow, 'photo', photo_id)
            row = BibRow(
                id=generate_id(),
                photo_id=photo_id,
                face_detection_id=face_detection_id,
                bib_number=str(bib_number),
                bounding_box=_box_to_json(bounding_box),
                confidence=confidence
            )
            session.add(row)
            session.flush()
            return row.to_record()

    def get_bibs_by_photo(self, photo_id: str) -> List[BibDetection]:
        with self.session_scope() as session:
            rows = session.query(BibRow).filter(
                BibRow.photo_id == photo_id
            ).order_by(BibRow.seq).all()
            return [row.to_record() for row in rows]

    # Match feedback

    def create_match_feedback(
        self,
        cluster_id: str,
        photo_id: str,
        is_match: bool,
        user_id: Optional[str] = None
    ) -> MatchFeedback:
        with self.session_scope() as session:
            cluster = self._require_row(session, ClusterRow, 'cluster', cluster_id)
            row = FeedbackRow(
                id=generate_id(),
                cluster_id=cluster_id,
                event_id=cluster.event_id,
                photo_id=photo_id,
                is_match=bool(is_match),
                user_id=user_id
            )
            session.add(row)
            session.flush()
            return row.to_record()

    def get_feedback_by_cluster(self, cluster_id: str) -> List[MatchFeedback]:
        with self.session_scope() as session:
            rows = session.query(FeedbackRow).filter(
                FeedbackRow.cluster_id == cluster_id
            ).order_by(FeedbackRow.seq).all()
            return [row.to_record() for row in rows]

    def close(self):
        """Dispose of the connection pool."""
        self.engine.dispose()
        logger.debug("SQLStore closed")

    def get_stats(self) -> dict:
        """Get database statistics."""
        with self.session_scope() as session:
            stats = {
                'backend': self.__class__.__name__,
                'events': session.query(func.count(EventRow.seq)).scalar() or 0,
                'photos': session.query(func.count(PhotoRow.seq)).scalar() or 0,
                'clusters': session.query(func.count(ClusterRow.seq)).scalar() or 0,
                'faces': session.query(func.count(FaceRow.seq)).scalar() or 0,
            }
        stats['url'] = self.engine.url.render_as_string(hide_password=True)
        return stats

    def __repr__(self) -> str:
        return f"SQLStore(url='{self.engine.url.render_as_string(hide_password=True)}')"
