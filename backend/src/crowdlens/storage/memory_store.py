"""In-memory detection store.

Reference implementation of DetectionStore backed by dicts plus explicit
secondary indexes. Data lives only as long as the process; used by tests and
by the CLI when no database is configured.
"""

from dataclasses import replace
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple
import copy
import logging
import threading

import numpy as np

from ..errors import NotFound
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
    generate_id,
    utcnow,
)
from .base import DetectionStore, EVENT_UPDATABLE_FIELDS, validate_updates

logger = logging.getLogger(__name__)

# Ordered set: dict keys with None values keep insertion order
_OrderedIds = Dict[str, None]


def _index_add(index: Dict[str, _OrderedIds], key: str, record_id: str):
    index.setdefault(key, {})[record_id] = None


def _index_remove(index: Dict[str, _OrderedIds], key: Optional[str], record_id: str):
    if key is None:
        return
    ids = index.get(key)
    if ids is not None:
        ids.pop(record_id, None)


class MemoryStore(DetectionStore):
    """Dict-backed store with secondary indexes.

    Indexes maintained alongside the primary maps:
    - photos by event, clusters by event
    - faces, clothing and bibs by photo
    - faces by cluster, feedback by cluster and by event

    A re-entrant lock keeps maps and indexes consistent under concurrent
    callers. Records are copied on the way in and out.
    """

    def __init__(self):
        self._lock = threading.RLock()

        self._events: Dict[str, Event] = {}
        self._photos: Dict[str, Photo] = {}
        self._faces: Dict[str, FaceDetection] = {}
        self._clusters: Dict[str, PersonCluster] = {}
        self._clothing: Dict[str, ClothingAttributes] = {}
        self._bibs: Dict[str, BibDetection] = {}
        self._feedback: Dict[str, MatchFeedback] = {}

        self._photos_by_event: Dict[str, _OrderedIds] = {}
        self._clusters_by_event: Dict[str, _OrderedIds] = {}
        self._faces_by_photo: Dict[str, _OrderedIds] = {}
        self._faces_by_cluster: Dict[str, _OrderedIds] = {}
        self._clothing_by_photo: Dict[str, _OrderedIds] = {}
        self._bibs_by_photo: Dict[str, _OrderedIds] = {}
        self._feedback_by_cluster: Dict[str, _OrderedIds] = {}
        self._feedback_by_event: Dict[str, _OrderedIds] = {}

        logger.info("MemoryStore initialized")

    # Helpers

    @staticmethod
    def _copy_face(face: FaceDetection) -> FaceDetection:
        return replace(
            face,
            bounding_box=copy.copy(face.bounding_box),
            embedding=face.embedding.copy()
        )

    def _require(self, table: Dict[str, Any], kind: str, record_id: str):
        record = table.get(record_id)
        if record is None:
            raise NotFound(kind, record_id)
        return record

    def _collect(self, table: Dict[str, Any], ids: Optional[_OrderedIds]) -> list:
        if not ids:
            return []
        return [copy.deepcopy(table[i]) for i in ids if i in table]

    # Events

    def create_event(
        self,
        title: str,
        event_id: Optional[str] = None,
        description: Optional[str] = None,
        location: Optional[str] = None
    ) -> Event:
        with self._lock:
            event = Event(
                id=event_id or generate_id(),
                title=title,
                description=description,
                location=location
            )
            if event.id in self._events:
                raise ValueError(f"Event already exists: {event.id}")
            self._events[event.id] = event
            self._photos_by_event[event.id] = {}
            self._clusters_by_event[event.id] = {}
            logger.debug(f"Created event {event.id}")
            return copy.deepcopy(event)

    def get_event(self, event_id: str) -> Optional[Event]:
        with self._lock:
            event = self._events.get(event_id)
            return copy.deepcopy(event) if event else None

    def list_events(self) -> List[Event]:
        with self._lock:
            return [copy.deepcopy(e) for e in self._events.values()]

    def update_event(self, event_id: str, **updates: Any) -> Event:
        validate_updates('event', updates, EVENT_UPDATABLE_FIELDS)
        with self._lock:
            event = self._require(self._events, 'event', event_id)
            updated = replace(event, **updates, updated_at=utcnow())
            self._events[event_id] = updated
            return copy.deepcopy(updated)

    def delete_event(self, event_id: str) -> bool:
        with self._lock:
            if event_id not in self._events:
                return False

            for cluster_id in list(self._clusters_by_event.get(event_id, {})):
                self._drop_cluster(cluster_id)
            for photo_id in list(self._photos_by_event.get(event_id, {})):
                self._drop_photo(photo_id)
            # Feedback outlives its cluster, but not its event
            for feedback_id in self._feedback_by_event.pop(event_id, {}):
                feedback = self._feedback.pop(feedback_id, None)
                if feedback is not None:
                    _index_remove(self._feedback_by_cluster, feedback.cluster_id, feedback_id)

            self._photos_by_event.pop(event_id, None)
            self._clusters_by_event.pop(event_id, None)
            del self._events[event_id]
            logger.info(f"Deleted event {event_id}")
            return True

    # Photos

    def create_photo(
        self,
        event_id: str,
        original_url: str = '',
        thumbnail_url: str = ''
    ) -> Photo:
        with self._lock:
            self._require(self._events, 'event', event_id)
            photo = Photo(
                id=generate_id(),
                event_id=event_id,
                original_url=original_url,
                thumbnail_url=thumbnail_url
            )
            self._photos[photo.id] = photo
            _index_add(self._photos_by_event, event_id, photo.id)
            logger.debug(f"Created photo {photo.id} in event {event_id}")
            return copy.deepcopy(photo)

    def get_photo(self, photo_id: str) -> Optional[Photo]:
        with self._lock:
            photo = self._photos.get(photo_id)
            return copy.deepcopy(photo) if photo else None

    def get_photos_by_event(self, event_id: str) -> List[Photo]:
        with self._lock:
            return self._collect(self._photos, self._photos_by_event.get(event_id))

    def update_photo_status(
        self,
        photo_id: str,
        status: ProcessingStatus,
        error: Optional[str] = None
    ) -> Photo:
        with self._lock:
            photo = self._require(self._photos, 'photo', photo_id)
            status = ProcessingStatus(status)
            updated = replace(
                photo,
                processing_status=status,
                processing_error=error,
                processed_at=utcnow() if status == ProcessingStatus.PROCESSED else None
            )
            self._photos[photo_id] = updated
            return copy.deepcopy(updated)

    def delete_photo(self, photo_id: str) -> bool:
        with self._lock:
            if photo_id not in self._photos:
                return False
            self._drop_photo(photo_id)
            return True

    def _drop_photo(self, photo_id: str):
        self._delete_detections(photo_id)
        photo = self._photos.pop(photo_id)
        _index_remove(self._photos_by_event, photo.event_id, photo_id)

    def delete_photo_detections(self, photo_id: str) -> Set[str]:
        with self._lock:
            self._require(self._photos, 'photo', photo_id)
            return self._delete_detections(photo_id)

    def _delete_detections(self, photo_id: str) -> Set[str]:
        affected: Set[str] = set()

        for face_id in list(self._faces_by_photo.pop(photo_id, {})):
            face = self._faces.pop(face_id, None)
            if face is not None and face.cluster_id is not None:
                _index_remove(self._faces_by_cluster, face.cluster_id, face_id)
                affected.add(face.cluster_id)

        for clothing_id in self._clothing_by_photo.pop(photo_id, {}):
            self._clothing.pop(clothing_id, None)

        for bib_id in self._bibs_by_photo.pop(photo_id, {}):
            self._bibs.pop(bib_id, None)

        logger.debug(f"Deleted detections of photo {photo_id}")
        return affected

    # Face detections

    def create_face_detection(
        self,
        photo_id: str,
        bounding_box: BoundingBox,
        confidence: float,
        embedding: np.ndarray
    ) -> FaceDetection:
        with self._lock:
            self._require(self._photos, 'photo', photo_id)
            face = FaceDetection(
                id=generate_id(),
                photo_id=photo_id,
                bounding_box=copy.copy(bounding_box),
                confidence=confidence,
                embedding=np.array(embedding, copy=True)
            )
            self._faces[face.id] = face
            _index_add(self._faces_by_photo, photo_id, face.id)
            return self._copy_face(face)

    def get_face_detection(self, face_id: str) -> Optional[FaceDetection]:
        with self._lock:
            face = self._faces.get(face_id)
            return self._copy_face(face) if face else None

    def get_face_detections_by_photo(self, photo_id: str) -> List[FaceDetection]:
        with self._lock:
            ids = self._faces_by_photo.get(photo_id, {})
            return [self._copy_face(self._faces[i]) for i in ids if i in self._faces]

    def get_face_detections_by_cluster(self, cluster_id: str) -> List[FaceDetection]:
        with self._lock:
            ids = self._faces_by_cluster.get(cluster_id, {})
            return [self._copy_face(self._faces[i]) for i in ids if i in self._faces]

    def update_face_cluster(
        self,
        face_id: str,
        cluster_id: str,
        confidence: float
    ) -> FaceDetection:
        with self._lock:
            face = self._require(self._faces, 'face', face_id)
            self._require(self._clusters, 'cluster', cluster_id)

            _index_remove(self._faces_by_cluster, face.cluster_id, face_id)
            updated = replace(face, cluster_id=cluster_id, cluster_confidence=float(confidence))
            self._faces[face_id] = updated
            _index_add(self._faces_by_cluster, cluster_id, face_id)
            return self._copy_face(updated)

    def clear_face_cluster(self, face_id: str) -> FaceDetection:
        with self._lock:
            face = self._require(self._faces, 'face', face_id)
            _index_remove(self._faces_by_cluster, face.cluster_id, face_id)
            updated = replace(face, cluster_id=None, cluster_confidence=None)
            self._faces[face_id] = updated
            return self._copy_face(updated)

    # Person clusters

    def create_cluster(
        self,
        event_id: str,
        representative_face_id: Optional[str] = None,
        representative_photo_id: Optional[str] = None,
        representative_thumbnail_url: Optional[str] = None,
        tags: Optional[Iterable[str]] = None
    ) -> PersonCluster:
        with self._lock:
            self._require(self._events, 'event', event_id)
            cluster = PersonCluster(
                id=generate_id(),
                event_id=event_id,
                representative_face_id=representative_face_id,
                representative_photo_id=representative_photo_id,
                representative_thumbnail_url=representative_thumbnail_url,
                tags=list(tags or [])
            )
            self._clusters[cluster.id] = cluster
            _index_add(self._clusters_by_event, event_id, cluster.id)
            self._faces_by_cluster[cluster.id] = {}
            logger.debug(f"Created cluster {cluster.id} in event {event_id}")
            return copy.deepcopy(cluster)

    def get_cluster(self, cluster_id: str) -> Optional[PersonCluster]:
        with self._lock:
            cluster = self._clusters.get(cluster_id)
            return copy.deepcopy(cluster) if cluster else None

    def get_clusters_by_event(self, event_id: str) -> List[PersonCluster]:
        with self._lock:
            return self._collect(self._clusters, self._clusters_by_event.get(event_id))

    def update_cluster(self, cluster_id: str, **updates: Any) -> PersonCluster:
        validate_updates('cluster', updates, CLUSTER_UPDATABLE_FIELDS)
        if 'tags' in updates:
            updates['tags'] = list(updates['tags'])
        with self._lock:
            cluster = self._require(self._clusters, 'cluster', cluster_id)
            updated = replace(cluster, **updates, updated_at=utcnow())
            self._clusters[cluster_id] = updated
            return copy.deepcopy(updated)

    def delete_cluster(self, cluster_id: str) -> bool:
        with self._lock:
            if cluster_id not in self._clusters:
                return False
            self._drop_cluster(cluster_id)
            return True

    def _drop_cluster(self, cluster_id: str):
        for face_id in self._faces_by_cluster.pop(cluster_id, {}):
            face = self._faces.get(face_id)
            if face is not None:
                self._faces[face_id] = replace(face, cluster_id=None, cluster_confidence=None)

        cluster =self._clusters.pop(cluster_id)
        _index_remove(self._clusters_by_event, cluster.event_id, cluster_id)
        logger.debug(f"Deleted cluster {cluster_id}")

    def get_event_embeddings(self, event_id: str) -> List[EventEmbedding]:
        with self._lock:
            results = []
            for photo_id in self._photos_by_event.get(event_id, {}):
                for face_id in self._faces_by_photo.get(photo_id, {}):
                    face = self._faces.get(face_id)
                    if face is None:
                        continue
                    results.append(EventEmbedding(
                        face_id=face.id,
                        cluster_id=face.cluster_id,
                        embedding=face.embedding.copy()
                    ))
            return results

    def get_cluster_photos(
        self,
        cluster_id: str,
        limit: int = 50,
        offset: int = 0
    ) -> Tuple[List[Photo], int]:
        with self._lock:
            photo_ids: Dict[str, None] = {}
            for face_id in self._faces_by_cluster.get(cluster_id, {}):
                face = self._faces.get(face_id)
                if face is not None:
                    photo_ids[face.photo_id] = None

            all_ids = list(photo_ids)
            page = all_ids[offset:offset + limit]
            photos = [copy.deepcopy(self._photos[i]) for i in page if i in self._photos]
            return photos, len(all_ids)

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
        with self._lock:
            self._require(self._photos, 'photo', photo_id)
            attrs = ClothingAttributes(
                id=generate_id(),
                photo_id=photo_id,
                face_detection_id=face_detection_id,
                dominant_colors=list(dominant_colors),
                items=[copy.copy(item) for item in items],
                descriptors=list(descriptors),
                confidence=confidence
            )
            self._clothing[attrs.id] = attrs
            _index_add(self._clothing_by_photo, photo_id, attrs.id)
            return copy.deepcopy(attrs)

    def get_clothing_by_photo(self, photo_id: str) -> List[ClothingAttributes]:
        with self._lock:
            return self._collect(self._clothing, self._clothing_by_photo.get(photo_id))

    # Bib detections

    def create_bib_detection(
        self,
        photo_id: str,
        bib_number: str,
        bounding_box: BoundingBox,
        confidence: float,
        face_detection_id: Optional[str] = None
    ) -> BibDetection:
        with self._lock:
            self._require(self._photos, 'photo', photo_id)
            bib = BibDetection(
                id=generate_id(),
                photo_id=photo_id,
                bib_number=str(bib_number),
                bounding_box=copy.copy(bounding_box),
                confidence=confidence,
                face_detection_id=face_detection_id
            )
            self._bibs[bib.id] = bib
            _index_add(self._bibs_by_photo, photo_id, bib.id)
            return copy.deepcopy(bib)

    def get_bibs_by_photo(self, photo_id: str) -> List[BibDetection]:
        with self._lock:
            return self._collect(self._bibs, self._bibs_by_photo.get(photo_id))

    # Match feedback

    def create_match_feedback(
        self,
        cluster_id: str,
        photo_id: str,
        is_match: bool,
        user_id: Optional[str] = None
    ) -> MatchFeedback:
        with self._lock:
            cluster = self._require(self._clusters, 'cluster', cluster_id)
            feedback = MatchFeedback(
                id=generate_id(),
                cluster_id=cluster_id,
                photo_id=photo_id,
                is_match=bool(is_match),
                user_id=user_id
            )
            self._feedback[feedback.id] = feedback
            _index_add(self._feedback_by_cluster, cluster_id, feedback.id)
            _index_add(self._feedback_by_event, cluster.event_id, feedback.id)
            return copy.deepcopy(feedback)

    def get_feedback_by_cluster(self, cluster_id: str) -> List[MatchFeedback]:
        with self._lock:
            return self._collect(self._feedback, self._feedback_by_cluster.get(cluster_id))

    def __repr__(self) -> str:
        return (
            f"MemoryStore(events={len(self._events)}, photos={len(self._photos)}, "
            f"faces={len(self._faces)}, clusters={len(self._clusters)})"
        )
