"""Dummy vision provider for development and testing.

Returns random but realistic-looking detections. The random generator is
seeded from a SHA-256 digest of the image bytes, so the same image always
yields the same faces, clothing and bibs.
"""

from typing import List, Tuple
import hashlib
import logging
import time

import numpy as np

from ..models import BoundingBox
from .provider import (
    DetectedClothingItem,
    DetectedFace,
    DetectedPerson,
    DetectedText,
    PhotoDetectionResult,
    TextType,
    VisionProvider,
)

logger = logging.getLogger(__name__)

# Available colors for mock data
COLORS = [
    'red', 'orange', 'yellow', 'green', 'blue', 'purple',
    'pink', 'brown', 'black', 'white', 'gray', 'navy',
]

# Available clothing types
CLOTHING_TYPES = [
    'shirt', 'jacket', 'sweater', 'tank-top', 'pants',
    'shorts', 'hat', 'cap', 'vest', 'hoodie', 'jersey',
]


class DummyVisionProvider(VisionProvider):
    """Deterministic mock provider.

    Attributes:
        embedding_dim: Length of generated embeddings
        max_faces: Upper bound of faces per image (at least one is returned)
        bib_ratio: Share of faces that get a visible bib number
    """

    name = 'dummy'

    def __init__(
        self,
        embedding_dim: int = 128,
        max_faces: int = 5,
        bib_ratio: float = 0.6
    ):
        if embedding_dim < 1:
            raise ValueError(f"embedding_dim must be positive, got {embedding_dim}")
        if max_faces < 1:
            raise ValueError(f"max_faces must be positive, got {max_faces}")
        self.embedding_dim = embedding_dim
        self.max_faces = max_faces
        self.bib_ratio = bib_ratio

    @staticmethod
    def _rng(image_bytes: bytes) -> np.random.Generator:
        digest = hashlib.sha256(image_bytes).digest()
        return np.random.default_rng(int.from_bytes(digest[:8], 'big'))

    def _embedding(self, rng: np.random.Generator) -> np.ndarray:
        """Random unit vector."""
        embedding = rng.uniform(-1.0, 1.0, self.embedding_dim)
        norm = np.linalg.norm(embedding)
        if norm == 0:
            embedding[0] = 1.0
            norm = 1.0
        return embedding / norm

    def _faces(self, rng: np.random.Generator) -> List[DetectedFace]:
        faces = []
        count = int(rng.integers(1, self.max_faces + 1))

        for i in range(count):
            x = float(rng.uniform(0.1, 0.7))
            y = float(rng.uniform(0.05, 0.4))
            size = float(rng.uniform(0.08, 0.2))

            faces.append(DetectedFace(
                id=f"face-{i}",
                # Faces are typically taller than wide
                bounding_box=BoundingBox(x=x, y=y, width=size, height=size * 1.2),
                embedding=self._embedding(rng),
                confidence=float(rng.uniform(0.85, 0.99))
            ))

        return faces

    def _persons(
        self,
        rng: np.random.Generator,
        faces: List[DetectedFace]
    ) -> List[DetectedPerson]:
        persons = []

        for i, face in enumerate(faces):
            color_count = int(rng.integers(1, 4))
            dominant_colors = [str(c) for c in rng.choice(COLORS, size=color_count, replace=False)]
            primary_color = dominant_colors[0]
            secondary_color = dominant_colors[1] if len(dominant_colors) > 1 else None

            clothing_type = str(rng.choice(CLOTHING_TYPES))
            if secondary_color:
                descriptor = f"{primary_color} and {secondary_color} {clothing_type}"
            else:
                descriptor = f"{primary_color} {clothing_type}"

            # Person bounding box extends below face
            box = face.bounding_box
            person_box = BoundingBox(
                x=max(0.0, box.x - 0.05),
                y=box.y,
                width=box.width + 0.1,
                height=min(0.8, box.height * 4)
            )

            persons.append(DetectedPerson(
                person_id=f"person-{i}",
                face_detection_id=face.id,
                dominant_colors=dominant_colors,
                clothing_items=[DetectedClothingItem(
                    type=clothing_type,
                    primary_color=primary_color,
                    secondary_color=secondary_color,
                    confidence=float(rng.uniform(0.7, 0.95))
                )],
                descriptors=[descriptor],
                confidence=float(rng.uniform(0.8, 0.95)),
                bounding_box=person_box
            ))

        return persons

    def _bibs(
        self,
        rng: np.random.Generator,
        faces: List[DetectedFace]
    ) -> List[DetectedText]:
        # Only some people have visible bib numbers
        bib_count = int(len(faces) * self.bib_ratio)
        if bib_count == 0:
            return []

        picked = sorted(rng.choice(len(faces), size=bib_count, replace=False))
        texts = []
        for index in picked:
            face = faces[int(index)]
            box = face.bounding_box
            # Bib is typically on the torso, below the face
            bib_box = BoundingBox(
                x=box.x + box.width * 0.2,
                y=box.y + box.height * 2,
                width=box.width * 0.6,
                height=box.width * 0.3
            )
            texts.append(DetectedText(
                text=str(int(rng.integers(1, 10000))),
                type=TextType.BIB_NUMBER,
                bounding_box=bib_box,
                confidence=float(rng.uniform(0.8, 0.98)),
                associated_person_id=face.id
            ))

        return texts

    def _generate(self, image_bytes: bytes) -> Tuple[List[DetectedFace], List[DetectedPerson], List[DetectedText]]:
        rng = self._rng(image_bytes)
        faces = self._faces(rng)
        persons = self._persons(rng, faces)
        texts = self._bibs(rng, faces)
        return faces, persons, texts

    def analyze_photo(self, image_bytes: bytes, photo_id: str) -> PhotoDetectionResult:
        start_time = time.time()
        faces, persons, texts = self._generate(image_bytes)

        logger.debug(
            f"Dummy analysis of {photo_id}: {len(faces)} faces, "
            f"{len(persons)} persons, {len(texts)} texts"
        )

        return PhotoDetectionResult(
            photo_id=photo_id,
            faces=faces,
            persons=persons,
            text_detections=texts,
            metadata={
                'processing_time_ms': int((time.time() - start_time) * 1000),
                'provider_name': self.name,
                # Mock values
                'image_width': 1920,
                'image_height': 1080,
            }
        )

    def detect_faces(self, image_bytes: bytes) -> List[DetectedFace]:
        faces, _, _ = self._generate(image_bytes)
        return faces
