"""Cluster ownership, naming and match feedback.

End users find their cluster through search, claim it, give it a name and
confirm or reject the photos it suggests. Claim changes run under the event
lock so they cannot interleave with re-clustering of the same event.
"""

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Tuple
import logging

from .errors import AlreadyClaimed, NotClaimed, NotFound
from .models import PersonCluster, Photo, utcnow
from .storage.base import DetectionStore
from .storage.event_lock import EventLocks

logger = logging.getLogger(__name__)

ANONYMOUS_USER = 'anonymous'
MAX_PAGE_SIZE = 100


@dataclass
class FeedbackResult:
    photo_id: str
    saved: bool


@dataclass
class ClusterPhotoPage:
    """One page of a cluster's photos."""
    photos: List[Photo]
    total: int
    limit: int
    offset: int

    @property
    def has_more(self) -> bool:
        return self.offset + len(self.photos) < self.total

    def to_dict(self) -> Dict[str, Any]:
        return {
            'photos': [p.to_dict() for p in self.photos],
            'pagination': {
                'limit': self.limit,
                'offset': self.offset,
                'total': self.total,
                'has_more': self.has_more,
            },
        }


class ClusterService:
    """Operations end users perform on person clusters.

    Usage:
        service = ClusterService(store, locks)
        service.claim(cluster_id, user_id='u-17', display_name='Dana')
        service.record_feedback(cluster_id, [(photo_id, True)])
    """

    def __init__(
        self,
        store: DetectionStore,
        locks: Optional[EventLocks] = None,
        max_page_size: int = MAX_PAGE_SIZE
    ):
        self.store = store
        self.locks = locks or EventLocks()
        self.max_page_size = max_page_size

    def _get(self, cluster_id: str) -> PersonCluster:
        cluster = self.store.get_cluster(cluster_id)
        if cluster is None:
            raise NotFound('cluster', cluster_id)
        return cluster

    def claim(
        self,
        cluster_id: str,
        user_id: Optional[str] = None,
        display_name: Optional[str] = None
    ) -> PersonCluster:
        """Claim a cluster for a user.

        Args:
            cluster_id: Cluster to claim
            user_id: Claiming user (default: "anonymous")
            display_name: New name; blank keeps the current one

        Raises:
            NotFound: If the cluster does not exist
            AlreadyClaimed: If someone already claimed it
        """
        cluster = self._get(cluster_id)

        with self.locks.hold(cluster.event_id):
            cluster = self._get(cluster_id)
            if cluster.is_claimed:
                raise AlreadyClaimed(f"Cluster is already claimed: {cluster_id}")

            updates = {
                'claimed_by': user_id or ANONYMOUS_USER,
                'claimed_at': utcnow(),
            }
            name = (display_name or '').strip()
            if name:
                updates['display_name'] = name

            updated = self.store.update_cluster(cluster_id, **updates)

        logger.info(f"Cluster {cluster_id} claimed by {updated.claimed_by}")
        return updated

    def unclaim(self, cluster_id: str) -> PersonCluster:
        """Remove ownership of a cluster. The display name stays.

        Raises:
            NotFound: If the cluster does not exist
            NotClaimed: If the cluster is not claimed
        """
        cluster = self._get(cluster_id)

        with self.locks.hold(cluster.event_id):
            cluster = self._get(cluster_id)
            if not cluster.is_claimed:
                raise NotClaimed(f"Cluster is not claimed: {cluster_id}")
            updated = self.store.update_cluster(cluster_id, claimed_by=None, claimed_at=None)

        logger.info(f"Cluster {cluster_id} unclaimed")
        return updated

    def rename(self, cluster_id: str, display_name: Optional[str]) -> PersonCluster:
        """Set a cluster's display name; blank keeps the current one.

        Raises:
            NotFound: If the cluster does not exist
        """
        cluster = self._get(cluster_id)
        name = (display_name or '').strip()
        if not name:
            return cluster

        with self.locks.hold(cluster.event_id):
            return self.store.update_cluster(cluster_id, display_name=name)

    def record_feedback(
        self,
        cluster_id: str,
        items: Iterable[Tuple[str, bool]],
        user_id: Optional[str] = None
    ) -> List[FeedbackResult]:
        """Store yes/no judgments on suggested photos.

        Items naming an unknown photo, or whose verdict is not a bool, are
        reported as not saved. Duplicates are stored again.

        Args:
            cluster_id: Cluster the feedback is about
            items: (photo_id, is_match) pairs
            user_id: Optional author

        Returns:
            One FeedbackResult per item, in input order

        Raises:
            NotFound: If the cluster does not exist
        """
        self._get(cluster_id)
        results = []

        for photo_id, is_match in items:
            if not photo_id or not isinstance(is_match, bool):
                results.append(FeedbackResult(photo_id=photo_id or 'unknown', saved=False))
                continue

            if self.store.get_photo(photo_id) is None:
                results.append(FeedbackResult(photo_id=photo_id, saved=False))
                continue

            self.store.create_match_feedback(cluster_id, photo_id, is_match, user_id=user_id)
            results.append(FeedbackResult(photo_id=photo_id, saved=True))

        saved = sum(1 for r in results if r.saved)
        logger.info(f"Saved {saved} of {len(results)} feedback items for cluster {cluster_id}")
        return results

    def feedback_summary(self, cluster_id: str) -> Dict[str, int]:
        """Count feedback on a cluster.

        Returns:
            Dict with total, positive and negative counts

        Raises:
            NotFound: If the cluster does not exist
        """
        self._get(cluster_id)
        feedback = self.store.get_feedback_by_cluster(cluster_id)
        positive = sum(1 for f in feedback if f.is_match)
        return {
            'total': len(feedback),
            'positive': positive,
            'negative': len(feedback) - positive,
        }

    def cluster_photos(
        self,
        cluster_id: str,
        limit: int = 50,
        offset: int = 0
    ) -> ClusterPhotoPage:
        """Page through a cluster's photos.

        limit is clamped to [1, max_page_size] and offset to >= 0.

        Raises:
            NotFound: If the cluster does not exist
        """
        self._get(cluster_id)
        limit = max(1, min(int(limit), self.max_page_size))
        offset = max(0, int(offset))

        photos, total = self.store.get_cluster_photos(cluster_id, limit=limit, offset=offset)
        return ClusterPhotoPage(photos=photos, total=total, limit=limit, offset=offset)

    def refresh_counts(self, cluster_id: str) -> PersonCluster:
        """Recompute face_count and photo_count from actual membership.

        Unlike ClusterAssigner.refresh_cluster, an empty cluster is kept
        with zero counts.

        Raises:
            NotFound: If the cluster does not exist
        """
        cluster = self._get(cluster_id)

        with self.locks.hold(cluster.event_id):
            faces = self.store.get_face_detections_by_cluster(cluster_id)
            return self.store.update_cluster(
                cluster_id,
                face_count=len(faces),
                photo_count=len({f.photo_id for f in faces})
            )
