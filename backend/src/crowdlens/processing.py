"""Photo processing: vision analysis, detection persistence and clustering.

PhotoProcessor is the caller-facing entry point for one uploaded photo. It
runs the vision provider under a timeout, stores faces, clothing and bib
detections above their confidence floors, assigns each face to a person
cluster and tags clusters with clothing descriptors and bib numbers.

A photo moves strictly pending -> processing -> processed | failed.
reprocess_photo is the only way back.
"""

from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass, asdict
from typing import Dict, List, Optional
import logging

from .config import ClusteringConfig
from .errors import NotFound, PhotoNotPending, ProviderFailure
from .models import ClothingItem, Photo, ProcessingStatus
from .search.clustering import ClusterAssigner
from .storage.base import DetectionStore
from .storage.event_lock import EventLocks
from .vision.provider import PhotoDetectionResult, VisionProvider

logger = logging.getLogger(__name__)


@dataclass
class ProcessingResult:
    """Outcome of processing one photo.

    Attributes:
        photo_id: Processed photo
        success: True if the photo ended up processed
        error: Failure message when success is False
        faces_found: Faces returned by the provider
        faces_persisted: Faces above the confidence floor that were stored
        clusters_created: New clusters seeded by this photo
        clusters_joined: Faces that joined an existing cluster
        clothing_persisted: Clothing records stored
        bibs_persisted: Bib/jersey numbers stored
    """
    photo_id: str
    success: bool
    error: Optional[str] = None
    faces_found: int = 0
    faces_persisted: int = 0
    clusters_created: int = 0
    clusters_joined: int = 0
    clothing_persisted: int = 0
    bibs_persisted: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


class PhotoProcessor:
    """Processes photos into detections and person clusters.

    Usage:
        processor = PhotoProcessor(store, provider, config, locks)
        photo = store.create_photo(event.id, thumbnail_url='/thumbs/1.jpg')
        result = processor.process_photo(photo.id, image_bytes)
        processor.close()
    """

    def __init__(
        self,
        store: DetectionStore,
        vision_provider: VisionProvider,
        config: Optional[ClusteringConfig] = None,
        locks: Optional[EventLocks] = None,
        timeout: float = 30.0
    ):
        """Initialize photo processor.

        Args:
            store: Detection store
            vision_provider: Provider used to analyze images
            config: Thresholds and confidence floors
            locks: Event lock registry shared with other writers
            timeout: Maximum time for one provider call (seconds)
        """
        self.store = store
        self.vision_provider = vision_provider
        self.config = config or ClusteringConfig()
        self.locks = locks or EventLocks()
        self.timeout = timeout
        self.assigner = ClusterAssigner(store, self.config, self.locks)
        self._executor = self._new_executor()

    @staticmethod
    def _new_executor() -> ThreadPoolExecutor:
        return ThreadPoolExecutor(max_workers=4, thread_name_prefix='vision')

    def _analyze(self, image_bytes: bytes, photo_id: str) -> PhotoDetectionResult:
        """Run the provider under the configured timeout.

        A call that times out cannot be interrupted and keeps its worker
        thread until the provider returns. The pool it runs in is abandoned
        and later calls go to a fresh pool, so hung calls never starve them.

        Raises:
            ProviderFailure: If the provider fails or does not answer in time
        """
        executor = self._executor
        future = executor.submit(self.vision_provider.analyze_photo, image_bytes, photo_id)
        try:
            return future.result(timeout=self.timeout)
        except FutureTimeout:
            future.cancel()
            if self._executor is executor:
                self._executor = self._new_executor()
            executor.shutdown(wait=False)
            raise ProviderFailure(
                f"Vision provider timed out after {self.timeout}s",
                code="TIMEOUT",
                retryable=True
            )
        except ProviderFailure:
            raise
        except Exception as e:
            raise ProviderFailure(str(e) or e.__class__.__name__) from e

    def process_photo(self, photo_id: str, image_bytes: bytes) -> ProcessingResult:
        """Analyze one pending photo and fold its detections into the event.

        Provider errors and storage errors are recorded on the photo (status
        failed plus message) and reported in the result, not raised.
        Detections written before a storage error remain.

        Args:
            photo_id: Photo to process
            image_bytes: Raw image data

        Returns:
            ProcessingResult

        Raises:
            NotFound: If the photo does not exist
            PhotoNotPending: If the photo is processing, processed or failed
        """
        photo = self.store.get_photo(photo_id)
        if photo is None:
            raise NotFound('photo', photo_id)

        with self.locks.hold(photo.event_id):
            photo = self.store.get_photo(photo_id)
            if photo is None:
                raise NotFound('photo', photo_id)
            if photo.processing_status != ProcessingStatus.PENDING:
                raise PhotoNotPending(photo_id, photo.processing_status.value)
            self.store.update_photo_status(photo_id, ProcessingStatus.PROCESSING)

        result = ProcessingResult(photo_id=photo_id, success=False)

        try:
            detections = self._analyze(image_bytes, photo_id)
        except ProviderFailure as e:
            logger.warning(f"Vision analysis failed for photo {photo_id}: {e.message}")
            self.store.update_photo_status(photo_id, ProcessingStatus.FAILED, e.message)
            result.error = e.message
            return result

        result.faces_found = len(detections.faces)

        try:
            with self.locks.hold(photo.event_id):
                self._persist(photo, detections, result)
        except Exception as e:
            message = str(e) or e.__class__.__name__
            logger.error(f"Processing failed for photo {photo_id}: {message}")
            self.store.update_photo_status(photo_id, ProcessingStatus.FAILED, message)
            result.error = message
            return result

        self.store.update_photo_status(photo_id, ProcessingStatus.PROCESSED)
        result.success = True

        logger.info(
            f"Processed photo {photo_id}: {result.faces_persisted}/{result.faces_found} faces, "
            f"{result.clusters_created} new clusters, {result.bibs_persisted} bibs"
        )
        return result

    def _persist(
        self,
        photo: Photo,
        detections: PhotoDetectionResult,
        result: ProcessingResult
    ):
        """Store detections, assign faces and append cluster tags.

        Must run under the event lock.
        """
        # Provider-local face id -> stored face id / cluster id
        stored_faces: Dict[str, str] = {}
        face_clusters: Dict[str, str] = {}
        pending_tags: Dict[str, List[str]] = OrderedDict()

        for detected in detections.faces:
            if detected.confidence < self.config.min_face_confidence:
                continue

            face = self.store.create_face_detection(
                photo_id=photo.id,
                bounding_box=detected.bounding_box,
                confidence=detected.confidence,
                embedding=detected.embedding
            )
            stored_faces[detected.id] = face.id
            result.faces_persisted += 1

            assignment = self.assigner.assign(face, photo.event_id)
            face_clusters[face.id] = assignment.cluster_id
            if assignment.created:
                result.clusters_created += 1
            else:
                result.clusters_joined += 1

        for person in detections.persons:
            face_id = stored_faces.get(person.face_detection_id) if person.face_detection_id else None

            self.store.create_clothing_attributes(
                photo_id=photo.id,
                dominant_colors=person.dominant_colors,
                items=[
                    ClothingItem(
                        type=item.type,
                        primary_color=item.primary_color,
                        secondary_color=item.secondary_color,
                        confidence=item.confidence
                    )
                    for item in person.clothing_items
                ],
                descriptors=person.descriptors,
                confidence=person.confidence,
                face_detection_id=face_id
            )
            result.clothing_persisted += 1

            cluster_id = face_clusters.get(face_id) if face_id else None
            if cluster_id:
                pending_tags.setdefault(cluster_id, []).extend(person.descriptors)

        for text in detections.text_detections:
            if not text.type.is_number:
                continue
            if text.confidence < self.config.min_bib_confidence:
                continue

            face_id = stored_faces.get(text.associated_person_id) if text.associated_person_id else None

            self.store.create_bib_detection(
                photo_id=photo.id,
                bib_number=text.text,
                bounding_box=text.bounding_box,
                confidence=text.confidence,
                face_detection_id=face_id
            )
            result.bibs_persisted += 1

            cluster_id = face_clusters.get(face_id) if face_id else None
            if cluster_id:
                pending_tags.setdefault(cluster_id, []).append(f"bib:{text.text}")

        # Tags go in only after every detection is stored
        for cluster_id, tags in pending_tags.items():
            self.assigner.add_tags(cluster_id, tags)

    def reprocess_photo(self, photo_id: str, image_bytes: bytes) -> ProcessingResult:
        """Replace a photo's detections with a fresh analysis.

        Prior faces, clothing and bibs of the photo are deleted, the counters
        of the clusters they belonged to are recomputed (clusters left empty
        are deleted), and the photo goes back to pending before processing.

        Raises:
            NotFound: If the photo does not exist
        """
        photo = self.store.get_photo(photo_id)
        if photo is None:
            raise NotFound('photo', photo_id)

        with self.locks.hold(photo.event_id):
            affected = self.store.delete_photo_detections(photo_id)
            for cluster_id in affected:
                if self.store.get_cluster(cluster_id) is not None:
                    self.assigner.refresh_cluster(cluster_id)
            self.store.update_photo_status(photo_id, ProcessingStatus.PENDING)

        logger.info(f"Cleared {len(affected)} cluster links of photo {photo_id} for reprocessing")
        return self.process_photo(photo_id, image_bytes)

    def close(self):
        """Shut down the provider worker pool."""
        self._executor.shutdown(wait=False)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
