"""Vision provider contract.

A vision provider turns image bytes into raw detections: faces with
embeddings, persons with clothing attributes, and text such as bib numbers.
Real providers (cloud APIs, local models) live outside this package; they
implement VisionProvider and raise ProviderFailure on error.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, List, Dict, Any

import numpy as np

from ..models import BoundingBox, as_embedding
from ..similarity import cosine_similarity


class TextType(str, Enum):
    """Classification of a text detection."""
    BIB_NUMBER = 'bib-number'
    JERSEY_NUMBER = 'jersey-number'
    GENERIC_TEXT = 'generic-text'

    @property
    def is_number(self) -> bool:
        """Bib and jersey numbers identify a person; generic text does not."""
        return self in (TextType.BIB_NUMBER, TextType.JERSEY_NUMBER)


@dataclass
class DetectedFace:
    """Face returned by a provider.

    Attributes:
        id: Provider-local id, referenced by persons and texts of the same result
        bounding_box: Face location
        embedding: Face embedding vector
        confidence: Detection confidence (0-1)
    """
    id: str
    bounding_box: BoundingBox
    embedding: np.ndarray
    confidence: float

    def __post_init__(self):
        self.embedding = as_embedding(self.embedding)


@dataclass
class DetectedClothingItem:
    type: str
    primary_color: str
    secondary_color: Optional[str] = None
    confidence: float = 0.0


@dataclass
class DetectedPerson:
    """Person-level clothing attributes.

    Attributes:
        person_id: Provider-local id
        face_detection_id: Provider-local id of the matching face, if any
        dominant_colors: Dominant colors on this person
        clothing_items: Individual items detected
        descriptors: Free-text descriptors such as "red jacket"
        confidence: Detection confidence (0-1)
    """
    person_id: str
    face_detection_id: Optional[str] = None
    dominant_colors: List[str] = field(default_factory=list)
    clothing_items: List[DetectedClothingItem] = field(default_factory=list)
    descriptors: List[str] = field(default_factory=list)
    confidence: float = 0.0
    bounding_box: Optional[BoundingBox] = None


@dataclass
class DetectedText:
    """Text found in the image.

    associated_person_id is the provider-local id of the face nearest to
    the text, if any.
    """
    text: str
    type: TextType
    bounding_box: BoundingBox
    confidence: float
    associated_person_id: Optional[str] = None

    def __post_init__(self):
        self.type = TextType(self.type)


@dataclass
class PhotoDetectionResult:
    """Everything a provider found in one photo."""
    photo_id: str
    faces: List[DetectedFace] = field(default_factory=list)
    persons: List[DetectedPerson] = field(default_factory=list)
    text_detections: List[DetectedText] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)


class VisionProvider(ABC):
    """Interface every vision backend implements.

    Implementations must be safe to call from a worker thread; the photo
    processor runs analyze_photo under a timeout in a thread pool.
    """

    name: str = 'base'

    @abstractmethod
    def analyze_photo(self, image_bytes: bytes, photo_id: str) -> PhotoDetectionResult:
        """Run face, clothing and text detection on one image.

        Args:
            image_bytes: Raw image data (JPEG, PNG, ...)
            photo_id: Photo identifier for result tagging

        Returns:
            Complete detection result

        Raises:
            ProviderFailure: If the provider cannot analyze the image
        """

    @abstractmethod
    def detect_faces(self, image_bytes: bytes) -> List[DetectedFace]:
        """Detect faces and compute their embeddings.

        Raises:
            ProviderFailure: If the provider cannot analyze the image
        """

    def compare_faces(self, embedding1, embedding2) -> float:
        """Similarity of two embeddings, cosine by default."""
        return cosine_similarity(embedding1, embedding2)

    def health_check(self) -> bool:
        """True if the provider is operational."""
        return True

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(name='{self.name}')"
