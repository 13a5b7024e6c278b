"""Search engine for finding people in event photos.

This module provides the SearchEngine class with three independent,
read-only query paths over the person clusters of an event:
- face similarity against a reference embedding (or a selfie)
- exact bib/jersey number match
- clothing filters (colors, clothing type, descriptor)

Every path returns ClusterSearchResult objects sorted by similarity,
highest first.
"""

from collections import OrderedDict
from typing import Dict, List, Optional, Sequence, Tuple
import logging

import numpy as np

from ..config import SearchConfig
from ..errors import DimensionMismatch, NotFound, ProviderFailure
from ..models import (
    ClothingAttributes,
    ClothingSearchFilters,
    ClusterSearchResult,
    MatchingPhoto,
    PersonCluster,
)
from ..similarity import cosine_similarity
from ..storage.base import DetectionStore
from ..vision.provider import VisionProvider
from .results import rank_results

logger = logging.getLogger(__name__)

# Clothing score weights
PRIMARY_COLOR_SCORE = 0.4
SECONDARY_COLOR_SCORE = 0.2
DESCRIPTOR_SCORE = 0.4


def normalize_bib(bib_number: str) -> str:
    """Canonical form of a bib number for comparison."""
    return bib_number.strip().casefold()


def validate_filters(filters: ClothingSearchFilters) -> ClothingSearchFilters:
    """Reject a clothing search with no filters.

    The engine itself accepts empty filters; callers that take filters from
    users run them through this first.

    Raises:
        ValueError: If no filter is supplied
    """
    if filters.is_empty():
        raise ValueError(
            "At least one filter is required "
            "(primary_color, secondary_color, clothing_type, descriptor)"
        )
    return filters


def score_clothing(
    record: ClothingAttributes,
    filters: ClothingSearchFilters
) -> Optional[float]:
    """Score one clothing record against the filters.

    Every supplied filter must match. Colors are looked up in the record's
    dominant colors. The descriptor and the clothing type form one text
    criterion: each must appear (case-insensitive substring) in a
    descriptor, and the clothing type may instead equal an item type.

    Returns:
        Score in [0, 1], or None if any filter fails
    """
    score = 0.0
    colors = {c.casefold() for c in record.dominant_colors}
    descriptors = [d.casefold() for d in record.descriptors]

    if filters.primary_color:
        if filters.primary_color.casefold() not in colors:
            return None
        score += PRIMARY_COLOR_SCORE

    if filters.secondary_color:
        if filters.secondary_color.casefold() not in colors:
            return None
        score += SECONDARY_COLOR_SCORE

    if filters.descriptor or filters.clothing_type:
        if filters.descriptor:
            needle = filters.descriptor.casefold()
            if not any(needle in d for d in descriptors):
                return None

        if filters.clothing_type:
            wanted = filters.clothing_type.casefold()
            item_types = {item.type.casefold() for item in record.items}
            if wanted not in item_types and not any(wanted in d for d in descriptors):
                return None

        score += DESCRIPTOR_SCORE

    return score


class SearchEngine:
    """High-level search over the person clusters of an event.

    Usage:
        engine = SearchEngine(store, config, vision_provider=provider)

        # Search by reference embedding
        results = engine.search_by_face(event_id, embedding, threshold=0.6)

        # Search by bib number
        results = engine.search_by_bib(event_id, '1427')

        # Search by clothing
        filters = ClothingSearchFilters(primary_color='red', descriptor='jacket')
        results = engine.search_by_clothing(event_id, filters)
    """

    def __init__(
        self,
        store: DetectionStore,
        config: Optional[SearchConfig] = None,
        vision_provider: Optional[VisionProvider] = None
    ):
        """Initialize search engine.

        Args:
            store: Detection store to query
            config: Search defaults (face threshold, preview size)
            vision_provider: Needed only by search_by_image
        """
        self.store = store
        self.config = config or SearchConfig()
        self.vision_provider = vision_provider

    def _require_event(self, event_id: str):
        if self.store.get_event(event_id) is None:
            raise NotFound('event', event_id)

    def _build_result(
        self,
        cluster: PersonCluster,
        similarity: float,
        matching_photos: List[MatchingPhoto],
        total_photo_count: Optional[int] = None
    ) -> ClusterSearchResult:
        if total_photo_count is None:
            _, total_photo_count = self.store.get_cluster_photos(cluster.id, limit=1)
        return ClusterSearchResult(
            cluster=cluster,
            similarity=similarity,
            matching_photos=matching_photos[:self.config.preview_limit],
            total_photo_count=total_photo_count
        )

    def search_by_face(
        self,
        event_id: str,
        embedding: Sequence[float],
        threshold: Optional[float] = None
    ) -> List[ClusterSearchResult]:
        """Find clusters containing faces similar to a reference embedding.

        Each event face with similarity >= threshold counts toward its
        cluster; a cluster's score is the mean over its qualifying faces.
        Clusters with no qualifying face are left out.

        Args:
            event_id: Event to search
            embedding: Reference face embedding
            threshold: Minimum per-face similarity (default: config.face_threshold)

        Returns:
            Results ranked by similarity

        Raises:
            NotFound: If the event does not exist
        """
        threshold = self.config.face_threshold if threshold is None else threshold
        self._require_event(event_id)

        query = np.asarray(embedding, dtype=np.float64)
        scores: Dict[str, List[float]] = OrderedDict()
        skipped = 0

        for candidate in self.store.get_event_embeddings(event_id):
            if candidate.cluster_id is None:
                continue
            try:
                similarity = cosine_similarity(query, candidate.embedding)
            except DimensionMismatch:
                skipped += 1
                continue
            if similarity < threshold:
                continue
            scores.setdefault(candidate.cluster_id, []).append(similarity)

        if skipped:
            logger.warning(f"Skipped {skipped} faces with mismatched embedding length")

        results = []
        for cluster_id, similarities in scores.items():
            cluster = self.store.get_cluster(cluster_id)
            if cluster is None:
                continue

            mean = sum(similarities) / len(similarities)
            photos, total = self.store.get_cluster_photos(
                cluster_id, limit=self.config.preview_limit
            )
            previews = [
                MatchingPhoto(photo_id=p.id, thumbnail_url=p.thumbnail_url, confidence=mean)
                for p in photos
            ]
            results.append(self._build_result(cluster, mean, previews, total))

        logger.info(
            f"Face search in event {event_id}: {len(results)} clusters "
            f"(threshold: {threshold})"
        )
        return rank_results(results)

    def search_by_image(
        self,
        event_id: str,
        image_bytes: bytes,
        threshold: Optional[float] = None
    ) -> List[ClusterSearchResult]:
        """Search with the highest-confidence face found in an image.

        Returns:
            Results ranked by similarity; empty if no face is detected

        Raises:
            NotFound: If the event does not exist
            ProviderFailure: If no provider is configured or detection fails
        """
        if self.vision_provider is None:
            raise ProviderFailure("No vision provider configured", code="NO_PROVIDER")
        self._require_event(event_id)

        faces = self.vision_provider.detect_faces(image_bytes)
        if not faces:
            logger.info("No face detected in reference image")
            return []

        best_face = max(faces, key=lambda f: f.confidence)
        logger.debug(
            f"Found {len(faces)} face(s) in reference image, "
            f"using confidence {best_face.confidence:.2f}"
        )
        return self.search_by_face(event_id, best_face.embedding, threshold=threshold)

    def search_by_bib(self, event_id: str, bib_number: str) -> List[ClusterSearchResult]:
        """Find clusters by exact bib number.

        Comparison is exact after trimming and case folding, so "1427"
        matches " 1427 " but never "142" or "14270". A matching bib is
        credited to every cluster with a face in the same photo.

        Args:
            event_id: Event to search
            bib_number: Bib or jersey number

        Returns:
            Results with similarity 1.0

        Raises:
            NotFound: If the event does not exist
            ValueError: If the bib number is blank
        """
        query = normalize_bib(bib_number or '')
        if not query:
            raise ValueError("Bib number is required")
        self._require_event(event_id)

        # cluster_id -> photo_id -> MatchingPhoto
        matches: Dict[str, Dict[str, MatchingPhoto]] = OrderedDict()

        for photo in self.store.get_photos_by_event(event_id):
            for bib in self.store.get_bibs_by_photo(photo.id):
                if normalize_bib(bib.bib_number) != query:
                    continue

                for face in self.store.get_face_detections_by_photo(photo.id):
                    if face.cluster_id is None:
                        continue
                    photos = matches.setdefault(face.cluster_id, OrderedDict())
                    if photo.id not in photos:
                        photos[photo.id] = MatchingPhoto(
                            photo_id=photo.id,
                            thumbnail_url=photo.thumbnail_url,
                            confidence=bib.confidence
                        )

        results = []
        for cluster_id, photos in matches.items():
            cluster = self.store.get_cluster(cluster_id)
            if cluster is None:
                continue
            results.append(self._build_result(cluster, 1.0, list(photos.values())))

        logger.info(f"Bib search '{query}' in event {event_id}: {len(results)} clusters")
        return rank_results(results)

    def search_by_clothing(
        self,
        event_id: str,
        filters: ClothingSearchFilters
    ) -> List[ClusterSearchResult]:
        """Find clusters by clothing.

        Filters are conjunctive. Scores: primary color +0.4, secondary
        color +0.2, descriptor/clothing type +0.4. A cluster scores the best
        of its matching records. Records without a linked, clustered face
        never surface.

        Args:
            event_id: Event to search
            filters: Clothing filters

        Returns:
            Results ranked by similarity

        Raises:
            NotFound: If the event does not exist
        """
        self._require_event(event_id)

        # cluster_id -> (best score, photo_id -> MatchingPhoto)
        matches: Dict[str, Tuple[float, Dict[str, MatchingPhoto]]] = OrderedDict()

        for photo in self.store.get_photos_by_event(event_id):
            records = self.store.get_clothing_by_photo(photo.id)
            if not records:
                continue

            faces = {f.id: f for f in self.store.get_face_detections_by_photo(photo.id)}

            for record in records:
                if record.face_detection_id is None:
                    continue
                face = faces.get(record.face_detection_id)
                if face is None or face.cluster_id is None:
                    continue

                score = score_clothing(record, filters)
                if score is None:
                    continue

                best, photos = matches.get(face.cluster_id, (score, OrderedDict()))
                if photo.id not in photos:
                    photos[photo.id] = MatchingPhoto(
                        photo_id=photo.id,
                        thumbnail_url=photo.thumbnail_url,
                        confidence=score
                    )
                matches[face.cluster_id] = (max(best, score), photos)

        results = []
        for cluster_id, (score, photos) in matches.items():
            cluster = self.store.get_cluster(cluster_id)
            if cluster is None:
                continue
            results.append(self._build_result(cluster, score, list(photos.values())))

        logger.info(
            f"Clothing search {filters.to_dict()} in event {event_id}: "
            f"{len(results)} clusters"
        )
        return rank_results(results)

    def __repr__(self) -> str:
        provider = self.vision_provider.name if self.vision_provider else None
        return f"SearchEngine(store={self.store!r}, provider={provider})"
