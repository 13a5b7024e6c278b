"""Shared fixtures for the crowdlens test suite.

Provides:
- store: one fixture run against both MemoryStore and SQLStore
- make_vector: unit vectors with hand-picked cosine similarities
- ScriptedProvider: a vision provider that returns canned detections
- an isolated data home so no test touches ~/.crowdlens
"""

from dataclasses import replace
import time

import numpy as np
import pytest

from crowdlens.models import BoundingBox
from crowdlens.storage import MemoryStore, SQLStore
from crowdlens.vision.provider import (
    DetectedFace,
    DetectedPerson,
    DetectedText,
    DetectedClothingItem,
    PhotoDetectionResult,
    TextType,
    VisionProvider,
)

DIM = 8


def unit_vector(*components, dim=DIM):
    """Unit vector whose leading coordinates are proportional to components."""
    vector = np.zeros(dim, dtype=np.float64)
    vector[:len(components)] = components
    return vector / np.linalg.norm(vector)


def at_similarity(similarity, axis=0, other_axis=1, dim=DIM):
    """Unit vector with the given cosine similarity to the basis vector e[axis]."""
    vector = np.zeros(dim, dtype=np.float64)
    vector[axis] = similarity
    vector[other_axis] = np.sqrt(max(0.0, 1.0 - similarity ** 2))
    return vector


def face_box(offset=0.0):
    return BoundingBox(x=0.1 + offset, y=0.1, width=0.1, height=0.12)


class ScriptedProvider(VisionProvider):
    """Vision provider returning canned results keyed by image bytes.

    Unknown images yield an empty detection result.
    """

    name = 'scripted'

    def __init__(self, results=None, error=None, delay=0.0):
        self.results = dict(results or {})
        self.error = error
        self.delay = delay
        self.calls = []

    def add(self, image_bytes, faces=(), persons=(), texts=()):
        self.results[image_bytes] = PhotoDetectionResult(
            photo_id='',
            faces=list(faces),
            persons=list(persons),
            text_detections=list(texts)
        )

    def analyze_photo(self, image_bytes, photo_id):
        self.calls.append(photo_id)
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        result = self.results.get(image_bytes)
        if result is None:
            return PhotoDetectionResult(photo_id=photo_id)
        return replace(result, photo_id=photo_id)

    def detect_faces(self, image_bytes):
        if self.error is not None:
            raise self.error
        result = self.results.get(image_bytes)
        return list(result.faces) if result else []


def detected_face(face_id, embedding, confidence=0.95):
    return DetectedFace(
        id=face_id,
        bounding_box=face_box(),
        embedding=embedding,
        confidence=confidence
    )


def detected_person(person_id, face_id, colors, descriptors, items=()):
    return DetectedPerson(
        person_id=person_id,
        face_detection_id=face_id,
        dominant_colors=list(colors),
        clothing_items=[
            DetectedClothingItem(type=t, primary_color=colors[0], confidence=0.9)
            for t in items
        ],
        descriptors=list(descriptors),
        confidence=0.9
    )


def detected_bib(text, face_id=None, confidence=0.9, text_type=TextType.BIB_NUMBER):
    return DetectedText(
        text=text,
        type=text_type,
        bounding_box=BoundingBox(x=0.2, y=0.5, width=0.1, height=0.05),
        confidence=confidence,
        associated_person_id=face_id
    )


# Test fixtures

@pytest.fixture(autouse=True)
def isolated_data_home(tmp_path, monkeypatch):
    """Point the data home at a temp dir and drop CROWDLENS_* overrides."""
    home = tmp_path / 'crowdlens-home'
    monkeypatch.setenv('CROWDLENS_DATA_HOME', str(home))
    for name in (
        'CROWDLENS_SIMILARITY_THRESHOLD',
        'CROWDLENS_FACE_THRESHOLD',
        'CROWDLENS_STORAGE_BACKEND',
        'CROWDLENS_DATABASE_URL',
        'CROWDLENS_VISION_TIMEOUT',
        'CROWDLENS_LOG_LEVEL',
    ):
        monkeypatch.delenv(name, raising=False)
    return home


@pytest.fixture(params=['memory', 'sql'])
def store(request, tmp_path):
    """Detection store, once per backend."""
    if request.param == 'memory':
        store = MemoryStore()
    else:
        store = SQLStore(db_path=str(tmp_path / 'db' / 'crowdlens.db'))
    yield store
    store.close()


@pytest.fixture
def event(store):
    """An empty event in the store."""
    return store.create_event('City Marathon 2024', description='10k road race')


@pytest.fixture
def add_face(store):
    """Factory storing one face, creating a photo unless one is given."""
    def _add_face(event_id, embedding, photo=None, confidence=0.95):
        if photo is None:
            photo = store.create_photo(event_id, thumbnail_url='/thumbs/p.jpg')
        return store.create_face_detection(
            photo_id=photo.id,
            bounding_box=face_box(),
            confidence=confidence,
            embedding=embedding
        )
    return _add_face


@pytest.fixture
def make_vector():
    return unit_vector


@pytest.fixture
def vector_at():
    return at_similarity


@pytest.fixture
def provider():
    return ScriptedProvider()


@pytest.fixture
def detections():
    """Builders for provider-side detections."""
    class Builders:
        face = staticmethod(detected_face)
        person = staticmethod(detected_person)
        bib = staticmethod(detected_bib)
    return Builders
