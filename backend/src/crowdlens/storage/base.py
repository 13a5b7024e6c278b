"""Abstract detection store.

The DetectionStore interface is everything the clustering and search engine
needs from persistence: CRUD over the seven record types plus the indexed
lookups (by event, by photo, by cluster). MemoryStore and SQLStore both
implement it and share one behavioural test suite.

Update semantics: update_cluster is last-write-wins on the fields passed in.
The store performs no increments of its own; callers read, compute the new
value and write it back while holding the event lock.
"""

from abc import ABC, abstractmethod
from typing import Any, Iterable, List, Optional, Set, Tuple

import numpy as np

from ..models import (
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
)


class DetectionStore(ABC):
    """Keyed, indexed persistence for detections and person clusters.

    Lookups by unknown id return None; mutations of unknown ids raise
    NotFound. Unexpected backend errors on write raise PersistenceFailure.
    """

    # Events

    @abstractmethod
    def create_event(
        self,
        title: str,
        event_id: Optional[str] = None,
        description: Optional[str] = None,
        location: Optional[str] = None
    ) -> Event:
        """Create an event, generating an id unless one is given."""

    @abstractmethod
    def get_event(self, event_id: str) -> Optional[Event]:
        pass

    @abstractmethod
    def list_events(self) -> List[Event]:
        pass

    @abstractmethod
    def update_event(self, event_id: str, **updates: Any) -> Event:
        """Update title, description or location of an event."""

    @abstractmethod
    def delete_event(self, event_id: str) -> bool:
        """Delete an event with its photos, detections, clusters and feedback.

        Returns:
            True if the event existed
        """

    # Photos

    @abstractmethod
    def create_photo(
        self,
        event_id: str,
        original_url: str = '',
        thumbnail_url: str = ''
    ) -> Photo:
        """Create a pending photo in an existing event."""

    @abstractmethod
    def get_photo(self, photo_id: str) -> Optional[Photo]:
        pass

    @abstractmethod
    def get_photos_by_event(self, event_id: str) -> List[Photo]:
        pass

    @abstractmethod
    def update_photo_status(
        self,
        photo_id: str,
        status: ProcessingStatus,
        error: Optional[str] = None
    ) -> Photo:
        """Set the processing status.

        processed_at is set when the status becomes processed and cleared
        otherwise; the error is replaced by the given value (None clears it).
        """

    @abstractmethod
    def delete_photo(self, photo_id: str) -> bool:
        """Delete a photo and its face, clothing and bib detections."""

    @abstractmethod
    def delete_photo_detections(self, photo_id: str) -> Set[str]:
        """Delete the face, clothing and bib detections of one photo.

        Cluster counters are not touched.

        Returns:
            Ids of clusters that lost at least one face
        """

    # Face detections

    @abstractmethod
    def create_face_detection(
        self,
        photo_id: str,
        bounding_box: BoundingBox,
        confidence: float,
        embedding: np.ndarray
    ) -> FaceDetection:
        pass

    @abstractmethod
    def get_face_detection(self, face_id: str) -> Optional[FaceDetection]:
        pass

    @abstractmethod
    def get_face_detections_by_photo(self, photo_id: str) -> List[FaceDetection]:
        pass

    @abstractmethod
    def get_face_detections_by_cluster(self, cluster_id: str) -> List[FaceDetection]:
        pass

    @abstractmethod
    def update_face_cluster(
        self,
        face_id: str,
        cluster_id: str,
        confidence: float
    ) -> FaceDetection:
        """Point a face at a cluster, moving it out of its previous cluster."""

    @abstractmethod
    def clear_face_cluster(self, face_id: str) -> FaceDetection:
        """Reset a face to unassigned."""

    # Person clusters

    @abstractmethod
    def create_cluster(
        self,
        event_id: str,
        representative_face_id: Optional[str] = None,
        representative_photo_id: Optional[str] = None,
        representative_thumbnail_url: Optional[str] = None,
        tags: Optional[Iterable[str]] = None
    ) -> PersonCluster:
        """Create an empty cluster (face_count = photo_count = 0)."""

    @abstractmethod
    def get_cluster(self, cluster_id: str) -> Optional[PersonCluster]:
        pass

    @abstractmethod
    def get_clusters_by_event(self, event_id: str) -> List[PersonCluster]:
        pass

    @abstractmethod
    def update_cluster(self, cluster_id: str, **updates: Any) -> PersonCluster:
        """Overwrite the given cluster fields.

        Raises:
            NotFound: If the cluster does not exist
            ValueError: If a field is unknown or immutable (id, event_id)
        """

    @abstractmethod
    def delete_cluster(self, cluster_id: str) -> bool:
        """Delete a cluster.

        Member faces survive with their cluster pointer cleared. Match feedback
        recorded against the cluster is kept until its event is deleted.
        """

    @abstractmethod
    def get_event_embeddings(self, event_id: str) -> List[EventEmbedding]:
        """Every face embedding of every photo in the event.

        Includes faces not yet assigned to a cluster. Ordered by photo
        insertion, then face insertion.
        """

    @abstractmethod
    def get_cluster_photos(
        self,
        cluster_id: str,
        limit: int = 50,
        offset: int = 0
    ) -> Tuple[List[Photo], int]:
        """Distinct photos of the faces pointing at a cluster, paginated.

        Returns:
            Tuple of (photos in the requested page, total distinct photos)
        """

    # Clothing attributes

    @abstractmethod
    def create_clothing_attributes(
        self,
        photo_id: str,
        dominant_colors: Iterable[str],
        items: Iterable[ClothingItem],
        descriptors: Iterable[str],
        confidence: float,
        face_detection_id: Optional[str] = None
    ) -> ClothingAttributes:
        pass

    @abstractmethod
    def get_clothing_by_photo(self, photo_id: str) -> List[ClothingAttributes]:
        pass

    # Bib detections

    @abstractmethod
    def create_bib_detection(
        self,
        photo_id: str,
        bib_number: str,
        bounding_box: BoundingBox,
        confidence: float,
        face_detection_id: Optional[str] = None
    ) -> BibDetection:
        pass

    @abstractmethod
    def get_bibs_by_photo(self, photo_id: str) -> List[BibDetection]:
        pass

    # Match feedback

    @abstractmethod
    def create_match_feedback(
        self,
        cluster_id: str,
        photo_id: str,
        is_match: bool,
        user_id: Optional[str] = None
    ) -> MatchFeedback:
        """Append one feedback record. Duplicates are kept."""

    @abstractmethod
    def get_feedback_by_cluster(self, cluster_id: str) -> List[MatchFeedback]:
        pass

    def close(self):
        """Release backend resources."""

    def get_stats(self) -> dict:
        """Record counts, for the CLI and logs."""
        events = self.list_events()
        photos = [p for e in events for p in self.get_photos_by_event(e.id)]
        return {
            'backend': self.__class__.__name__,
            'events': len(events),
            'photos': len(photos),
            'clusters': sum(len(self.get_clusters_by_event(e.id)) for e in events),
            'faces': sum(len(self.get_event_embeddings(e.id)) for e in events),
        }


EVENT_UPDATABLE_FIELDS = frozenset({'title', 'description', 'location'})


def validate_updates(kind: str, updates: dict, allowed: frozenset):
    """Reject updates to unknown or immutable fields.

    Raises:
        ValueError: If any key is not in allowed
    """
    unknown = sorted(set(updates) - allowed)
    if unknown:
        raise ValueError(f"Cannot update {kind} field(s): {', '.join(unknown)}")
