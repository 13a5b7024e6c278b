"""Data classes for events, photos, detections and person clusters.

This module defines the records held by the detection store and the result
types returned by the search engine. Records are plain dataclasses; the
store hands out copies, so mutating a returned record never changes stored
state.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, List, Dict, Any, NamedTuple
import secrets
import string
import time

import numpy as np

EMBEDDING_DTYPE = np.float64

_ID_ALPHABET = string.digits + string.ascii_lowercase


def generate_id() -> str:
    """Generate an opaque record id: epoch millis plus a random suffix."""
    suffix = ''.join(secrets.choice(_ID_ALPHABET) for _ in range(9))
    return f"{int(time.time() * 1000)}-{suffix}"


def utcnow() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def as_embedding(values) -> np.ndarray:
    """Coerce a sequence of floats into a 1-D embedding array.

    Raises:
        ValueError: If the input is not one-dimensional
    """
    embedding = np.asarray(values, dtype=EMBEDDING_DTYPE)
    if embedding.ndim != 1:
        raise ValueError(f"Embedding must be 1-dimensional, got shape {embedding.shape}")
    return embedding


class ProcessingStatus(str, Enum):
    """Processing state of a photo."""
    PENDING = 'pending'
    PROCESSING = 'processing'
    PROCESSED = 'processed'
    FAILED = 'failed'


@dataclass
class BoundingBox:
    """Bounding box in relative image coordinates.

    Attributes:
        x: Left edge (0-1, relative to image width)
        y: Top edge (0-1, relative to image height)
        width: Width (0-1)
        height: Height (0-1)
    """
    x: float
    y: float
    width: float
    height: float

    @property
    def area(self) -> float:
        """Get area of bounding box."""
        return self.width * self.height

    def to_dict(self) -> Dict[str, float]:
        return {
            'x': self.x,
            'y': self.y,
            'width': self.width,
            'height': self.height
        }

    @classmethod
    def from_dict(cls, data: Dict[str, float]) -> 'BoundingBox':
        return cls(
            x=data['x'],
            y=data['y'],
            width=data['width'],
            height=data['height']
        )


@dataclass
class Event:
    """A collection of photos (race, festival, ...)."""
    id: str
    title: str
    description: Optional[str] = None
    location: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'title': self.title,
            'description': self.description,
            'location': self.location,
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at),
        }


@dataclass
class Photo:
    """One uploaded image and its processing state."""
    id: str
    event_id: str
    processing_status: ProcessingStatus = ProcessingStatus.PENDING
    processing_error: Optional[str] = None
    original_url: str = ''
    thumbnail_url: str = ''
    uploaded_at: datetime = field(default_factory=utcnow)
    processed_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'event_id': self.event_id,
            'processing_status': self.processing_status.value,
            'processing_error': self.processing_error,
            'original_url': self.original_url,
            'thumbnail_url': self.thumbnail_url,
            'uploaded_at': _iso(self.uploaded_at),
            'processed_at': _iso(self.processed_at),
        }


@dataclass
class FaceDetection:
    """A detected face within a photo.

    Attributes:
        id: Face id
        photo_id: Photo the face was found in
        bounding_box: Location of the face
        confidence: Detection confidence (0-1)
        embedding: Face embedding vector
        cluster_id: Person cluster, set after assignment
        cluster_confidence: Similarity score at assignment time
    """
    id: str
    photo_id: str
    bounding_box: BoundingBox
    confidence: float
    embedding: np.ndarray
    cluster_id: Optional[str] = None
    cluster_confidence: Optional[float] = None
    created_at: datetime = field(default_factory=utcnow)

    def __post_init__(self):
        """Validate data after initialization."""
        if self.confidence < 0 or self.confidence > 1:
            raise ValueError(f"Confidence must be between 0 and 1, got {self.confidence}")
        self.embedding = as_embedding(self.embedding)

    @property
    def is_assigned(self) -> bool:
        return self.cluster_id is not None

    def to_dict(self) -> Dict[str, Any]:
        """Dictionary representation (without embedding data)."""
        return {
            'id': self.id,
            'photo_id': self.photo_id,
            'bounding_box': self.bounding_box.to_dict(),
            'confidence': self.confidence,
            'embedding_dim': int(self.embedding.shape[0]),
            'cluster_id': self.cluster_id,
            'cluster_confidence': self.cluster_confidence,
            'created_at': _iso(self.created_at),
        }

    def __repr__(self) -> str:
        assigned = f" -> {self.cluster_id}" if self.cluster_id else ""
        return f"FaceDetection({self.id}, confidence={self.confidence:.2f}{assigned})"


@dataclass
class PersonCluster:
    """A hypothesized identity within one event.

    face_count and photo_count are stored counters. They must equal the number
    of faces pointing at the cluster and the number of distinct photos among
    those faces; the writers (assigner, re-clusterer) keep them in step.
    """
    id: str
    event_id: str
    representative_face_id: Optional[str] = None
    representative_photo_id: Optional[str] = None
    representative_thumbnail_url: Optional[str] = None
    display_name: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    face_count: int = 0
    photo_count: int = 0
    claimed_by: Optional[str] = None
    claimed_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_claimed(self) -> bool:
        return self.claimed_by is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'event_id': self.event_id,
            'representative_face_id': self.representative_face_id,
            'representative_photo_id': self.representative_photo_id,
            'representative_thumbnail_url': self.representative_thumbnail_url,
            'display_name': self.display_name,
            'tags': list(self.tags),
            'face_count': self.face_count,
            'photo_count': self.photo_count,
            'is_claimed': self.is_claimed,
            'claimed_at': _iso(self.claimed_at),
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at),
        }


# Fields of PersonCluster that update_cluster may change
CLUSTER_UPDATABLE_FIELDS = frozenset({
    'representative_face_id',
    'representative_photo_id',
    'representative_thumbnail_url',
    'display_name',
    'tags',
    'face_count',
    'photo_count',
    'claimed_by',
    'claimed_at',
})


@dataclass
class ClothingItem:
    """One clothing item worn by a person."""
    type: str
    primary_color: str
    secondary_color: Optional[str] = None
    confidence: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'type': self.type,
            'primary_color': self.primary_color,
            'secondary_color': self.secondary_color,
            'confidence': self.confidence,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ClothingItem':
        return cls(
            type=data['type'],
            primary_color=data['primary_color'],
            secondary_color=data.get('secondary_color'),
            confidence=data.get('confidence', 0.0),
        )


@dataclass
class ClothingAttributes:
    """Clothing observed for one person in a photo."""
    id: str
    photo_id: str
    face_detection_id: Optional[str] = None
    dominant_colors: List[str] = field(default_factory=list)
    items: List[ClothingItem] = field(default_factory=list)
    descriptors: List[str] = field(default_factory=list)
    confidence: float = 0.0
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'photo_id': self.photo_id,
            'face_detection_id': self.face_detection_id,
            'dominant_colors': list(self.dominant_colors),
            'items': [item.to_dict() for item in self.items],
            'descriptors': list(self.descriptors),
            'confidence': self.confidence,
            'created_at': _iso(self.created_at),
        }


@dataclass
class BibDetection:
    """OCR'd bib or jersey number.

    bib_number is a string to preserve leading zeros and alphanumeric bibs.
    """
    id: str
    photo_id: str
    bib_number: str
    bounding_box: BoundingBox
    confidence: float
    face_detection_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'photo_id': self.photo_id,
            'face_detection_id': self.face_detection_id,
            'bib_number': self.bib_number,
            'bounding_box': self.bounding_box.to_dict(),
            'confidence': self.confidence,
            'created_at': _iso(self.created_at),
        }


@dataclass
class MatchFeedback:
    """A user's yes/no judgment that a photo belongs to a cluster."""
    id: str
    cluster_id: str
    photo_id: str
    is_match: bool
    user_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'cluster_id': self.cluster_id,
            'photo_id': self.photo_id,
            'is_match': self.is_match,
            'user_id': self.user_id,
            'created_at': _iso(self.created_at),
        }


class EventEmbedding(NamedTuple):
    """One candidate embedding of an event, as used by clustering and search."""
    face_id: str
    cluster_id: Optional[str]
    embedding: np.ndarray


@dataclass
class ClothingSearchFilters:
    """Filters for clothing search. Every supplied filter must match."""
    primary_color: Optional[str] = None
    secondary_color: Optional[str] = None
    clothing_type: Optional[str] = None
    descriptor: Optional[str] = None

    def is_empty(self) -> bool:
        return not any((
            self.primary_color,
            self.secondary_color,
            self.clothing_type,
            self.descriptor,
        ))

    def to_dict(self) -> Dict[str, str]:
        """Only the filters that were supplied."""
        return {
            key: value
            for key, value in (
                ('primary_color', self.primary_color),
                ('secondary_color', self.secondary_color),
                ('clothing_type', self.clothing_type),
                ('descriptor', self.descriptor),
            )
            if value
        }


@dataclass
class MatchingPhoto:
    """Preview photo attached to a search result."""
    photo_id: str
    thumbnail_url: str
    confidence: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            'photo_id': self.photo_id,
            'thumbnail_url': self.thumbnail_url,
            'confidence': self.confidence,
        }


@dataclass
class ClusterSearchResult:
    """A person cluster matched by one of the search paths.

    Attributes:
        cluster: The matched cluster
        similarity: Match score 0-1 (higher is better)
        matching_photos: Up to five preview photos
        total_photo_count: Number of distinct photos in the cluster
        rank: Position in the result list (1-indexed)
    """
    cluster: PersonCluster
    similarity: float
    matching_photos: List[MatchingPhoto] = field(default_factory=list)
    total_photo_count: int = 0
    rank: int = 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            'rank': self.rank,
            'cluster': self.cluster.to_dict(),
            'similarity': self.similarity,
            'matching_photos': [p.to_dict() for p in self.matching_photos],
            'total_photo_count': self.total_photo_count,
        }

    def __repr__(self) -> str:
        return (
            f"ClusterSearchResult(rank={self.rank}, "
            f"cluster={self.cluster.id}, "
            f"similarity={self.similarity:.3f})"
        )
