"""Incremental cluster assignment and batch re-clustering.

Faces are grouped into person clusters within one event. A cluster has no
stored centroid: its signature is the set of member embeddings, and a face
is compared against a cluster by averaging its cosine similarity to every
member (see similarity.mean_similarity).

Two writers keep clusters up to date:
- ClusterAssigner.assign places one new face into the best existing
  cluster or seeds a new one
- ClusterAssigner.recluster throws away an event's clusters and rebuilds
  them with a single greedy pass

Both run under the event lock and keep face_count/photo_count in step with
actual membership.
"""

from collections import OrderedDict
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence, Tuple
import logging

import numpy as np

from ..config import ClusteringConfig
from ..errors import DimensionMismatch, NotFound
from ..models import EventEmbedding, FaceDetection, PersonCluster
from ..similarity import mean_similarity
from ..storage.base import DetectionStore
from ..storage.event_lock import EventLocks

logger = logging.getLogger(__name__)

# Re-clustering compares every face with every cluster built so far
RECLUSTER_WARN_FACES = 2000


@dataclass
class AssignmentResult:
    """Outcome of assigning one face.

    Attributes:
        face_id: Assigned face
        cluster_id: Cluster the face now belongs to
        similarity: Mean similarity to the joined cluster (1.0 for a new one)
        created: True if a new cluster was seeded
    """
    face_id: str
    cluster_id: str
    similarity: float
    created: bool


def group_by_cluster(candidates: Iterable[EventEmbedding]) -> Dict[str, List[np.ndarray]]:
    """Group candidate embeddings by cluster id, in first-seen order.

    Unassigned embeddings are left out: they belong to no cluster's signature.
    """
    groups: Dict[str, List[np.ndarray]] = OrderedDict()
    for candidate in candidates:
        if candidate.cluster_id is None:
            continue
        groups.setdefault(candidate.cluster_id, []).append(candidate.embedding)
    return groups


def find_best_cluster(
    embedding: np.ndarray,
    candidates: Sequence[EventEmbedding],
    threshold: float
) -> Tuple[Optional[str], float]:
    """Find the cluster whose members are most similar to an embedding.

    Args:
        embedding: Embedding of the face being placed
        candidates: Event embeddings (face_id, cluster_id, embedding)
        threshold: Minimum mean similarity for a cluster to qualify

    Returns:
        Tuple of (cluster_id, mean similarity), or (None, 0.0) if no cluster
        reaches the threshold. On equal scores the cluster seen first wins.
    """
    best_cluster_id = None
    best_similarity = 0.0

    for cluster_id, members in group_by_cluster(candidates).items():
        try:
            similarity = mean_similarity(embedding, members)
        except DimensionMismatch as e:
            logger.warning(f"Skipping cluster {cluster_id}: {e}")
            continue

        if similarity > best_similarity and similarity >= threshold:
            best_similarity = similarity
            best_cluster_id = cluster_id

    return best_cluster_id, best_similarity


class ClusterAssigner:
    """Places faces into person clusters.

    Usage:
        assigner = ClusterAssigner(store, config, locks)

        face = store.create_face_detection(photo.id, box, 0.93, embedding)
        result = assigner.assign(face, event_id)

        # Rebuild an event from scratch with a stricter threshold
        count = assigner.recluster(event_id, threshold=0.85)
    """

    def __init__(
        self,
        store: DetectionStore,
        config: Optional[ClusteringConfig] = None,
        locks: Optional[EventLocks] = None
    ):
        self.store = store
        self.config = config or ClusteringConfig()
        self.locks = locks or EventLocks()

    def assign(
        self,
        face: FaceDetection,
        event_id: str,
        threshold: Optional[float] = None
    ) -> AssignmentResult:
        """Assign a stored face to the best matching cluster of its event.

        A face that already belongs to a cluster keeps its assignment.

        Args:
            face: Face detection already persisted in the store
            event_id: Event the face's photo belongs to
            threshold: Similarity threshold (default: config.similarity_threshold)

        Returns:
            AssignmentResult

        Raises:
            NotFound: If the face or its photo does not exist
            ValueError: If the face's photo belongs to another event
        """
        threshold = self.config.similarity_threshold if threshold is None else threshold

        with self.locks.hold(event_id):
            current = self.store.get_face_detection(face.id)
            if current is None:
                raise NotFound('face', face.id)

            if current.cluster_id is not None:
                logger.debug(f"Face {current.id} already in cluster {current.cluster_id}")
                return AssignmentResult(
                    face_id=current.id,
                    cluster_id=current.cluster_id,
                    similarity=current.cluster_confidence or 0.0,
                    created=False
                )

            photo = self.store.get_photo(current.photo_id)
            if photo is None:
                raise NotFound('photo', current.photo_id)
            if photo.event_id != event_id:
                raise ValueError(
                    f"Face {current.id} belongs to event {photo.event_id}, not {event_id}"
                )

            candidates = [
                c for c in self.store.get_event_embeddings(event_id)
                if c.face_id != current.id
            ]
            cluster_id, similarity = find_best_cluster(current.embedding, candidates, threshold)

            if cluster_id is None:
                cluster = self.store.create_cluster(
                    event_id=event_id,
                    representative_face_id=current.id,
                    representative_photo_id=photo.id,
                    representative_thumbnail_url=photo.thumbnail_url
                )
                self.store.update_face_cluster(current.id, cluster.id, 1.0)
                self.store.update_cluster(cluster.id, face_count=1, photo_count=1)

                logger.debug(f"Face {current.id} seeded cluster {cluster.id}")
                return AssignmentResult(
                    face_id=current.id,
                    cluster_id=cluster.id,
                    similarity=1.0,
                    created=True
                )

            # Check photo membership before the face is linked
            members = self.store.get_face_detections_by_cluster(cluster_id)
            photo_seen = any(m.photo_id == current.photo_id for m in members)

            self.store.update_face_cluster(current.id, cluster_id, similarity)
            cluster = self.store.get_cluster(cluster_id)
            self.store.update_cluster(
                cluster_id,
                face_count=cluster.face_count + 1,
                photo_count=cluster.photo_count + (0 if photo_seen else 1)
            )

            logger.debug(
                f"Face {current.id} joined cluster {cluster_id} "
                f"(similarity: {similarity:.3f})"
            )
            return AssignmentResult(
                face_id=current.id,
                cluster_id=cluster_id,
                similarity=similarity,
                created=False
            )

    def recluster(self, event_id: str, threshold: Optional[float] = None) -> int:
        """Rebuild all clusters of an event with one greedy pass.

        Existing clusters (including names, tags and claims) are deleted.
        Each face, in fetch order, joins the first cluster built so far in
        this pass whose mean similarity reaches the threshold, else seeds a
        new one. Counters are recomputed from actual membership at the end.

        Args:
            event_id: Event to rebuild
            threshold: Similarity threshold (default: config.similarity_threshold)

        Returns:
            Number of clusters after the pass

        Raises:
            NotFound: If the event does not exist
        """
        threshold = self.config.similarity_threshold if threshold is None else threshold

        if self.store.get_event(event_id) is None:
            raise NotFound('event', event_id)

        with self.locks.hold(event_id):
            for cluster in self.store.get_clusters_by_event(event_id):
                self.store.delete_cluster(cluster.id)

            embeddings = self.store.get_event_embeddings(event_id)
            if len(embeddings) > RECLUSTER_WARN_FACES:
                logger.warning(
                    f"Re-clustering {len(embeddings)} faces in event {event_id}; "
                    f"cost grows quadratically with face count"
                )

            logger.info(
                f"Re-clustering {len(embeddings)} faces in event {event_id} "
                f"with threshold={threshold}"
            )

            new_clusters: List[Tuple[str, List[np.ndarray]]] = []
            photo_cache: Dict[str, str] = {}

            for candidate in embeddings:
                assigned = False

                for cluster_id, members in new_clusters:
                    try:
                        similarity = mean_similarity(candidate.embedding, members)
                    except DimensionMismatch as e:
                        logger.warning(f"Face {candidate.face_id} vs cluster {cluster_id}: {e}")
                        continue

                    if similarity >= threshold:
                        self.store.update_face_cluster(candidate.face_id, cluster_id, similarity)
                        members.append(candidate.embedding)
                        assigned = True
                        break

                if not assigned:
                    face = self.store.get_face_detection(candidate.face_id)
                    if face is None:
                        continue
                    if face.photo_id not in photo_cache:
                        photo = self.store.get_photo(face.photo_id)
                        photo_cache[face.photo_id] = photo.thumbnail_url if photo else None

                    cluster = self.store.create_cluster(
                        event_id=event_id,
                        representative_face_id=face.id,
                        representative_photo_id=face.photo_id,
                        representative_thumbnail_url=photo_cache[face.photo_id]
                    )
                    self.store.update_face_cluster(face.id, cluster.id, 1.0)
                    new_clusters.append((cluster.id, [candidate.embedding]))

            for cluster_id, _ in new_clusters:
                faces = self.store.get_face_detections_by_cluster(cluster_id)
                self.store.update_cluster(
                    cluster_id,
                    face_count=len(faces),
                    photo_count=len({f.photo_id for f in faces})
                )

        logger.info(f"Event {event_id} re-clustered into {len(new_clusters)} clusters")
        return len(new_clusters)

    def refresh_cluster(self, cluster_id: str) -> Optional[PersonCluster]:
        """Recompute a cluster's counters from its member faces.

        A cluster with no members left is deleted. A representative face that
        is no longer a member is replaced by the first remaining member.

        Returns:
            Updated cluster, or None if it was deleted

        Raises:
            NotFound: If the cluster does not exist
        """
        cluster = self.store.get_cluster(cluster_id)
        if cluster is None:
            raise NotFound('cluster', cluster_id)

        with self.locks.hold(cluster.event_id):
            faces = self.store.get_face_detections_by_cluster(cluster_id)
            if not faces:
                self.store.delete_cluster(cluster_id)
                logger.debug(f"Deleted empty cluster {cluster_id}")
                return None

            updates = {
                'face_count': len(faces),
                'photo_count': len({f.photo_id for f in faces}),
            }

            if cluster.representative_face_id not in {f.id for f in faces}:
                representative = faces[0]
                photo = self.store.get_photo(representative.photo_id)
                updates['representative_face_id'] = representative.id
                updates['representative_photo_id'] = representative.photo_id
                updates['representative_thumbnail_url'] = photo.thumbnail_url if photo else None

            return self.store.update_cluster(cluster_id, **updates)

    def add_tags(self, cluster_id: str, tags: Iterable[str]) -> PersonCluster:
        """Append tags to a cluster, skipping exact duplicates.

        The full tag list is read and written back once.

        Raises:
            NotFound: If the cluster does not exist
        """
        cluster = self.store.get_cluster(cluster_id)
        if cluster is None:
            raise NotFound('cluster', cluster_id)

        with self.locks.hold(cluster.event_id):
            cluster = self.store.get_cluster(cluster_id)
            if cluster is None:
                raise NotFound('cluster', cluster_id)

            new_tags = list(cluster.tags)
            for tag in tags:
                if tag not in new_tags:
                    new_tags.append(tag)

            if new_tags == cluster.tags:
                return cluster
            return self.store.update_cluster(cluster_id, tags=new_tags)


def recluster_event(
    store: DetectionStore,
    event_id: str,
    threshold: Optional[float] = None,
    locks: Optional[EventLocks] = None
) -> int:
    """Rebuild the clusters of one event. See ClusterAssigner.recluster."""
    return ClusterAssigner(store, locks=locks).recluster(event_id, threshold=threshold)
