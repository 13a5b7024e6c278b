"""
Importable high-level operations for CrowdLens.

These functions wrap store, provider and processor setup into single calls
that the CLI (or any script) can use directly.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from tqdm import tqdm

from .config import Settings
from .processing import PhotoProcessor
from .storage.base import DetectionStore
from .storage.event_lock import EventLocks
from .vision import create_vision_provider
from .vision.provider import VisionProvider

logger = logging.getLogger(__name__)

IMAGE_EXTENSIONS = {'.jpg', '.jpeg', '.png', '.bmp', '.tiff', '.webp'}


def is_image_file(path: Path) -> bool:
    """Check if a path has a supported image extension."""
    return path.suffix.lower() in IMAGE_EXTENSIONS


def find_images(folder: Path, recursive: bool = False) -> List[Path]:
    """List image files in a folder, sorted by path."""
    pattern = '**/*' if recursive else '*'
    return sorted(p for p in folder.glob(pattern) if p.is_file() and is_image_file(p))


def process_folder(
    event_id: str,
    folder: Union[str, Path],
    *,
    store: DetectionStore,
    settings: Optional[Settings] = None,
    provider: Optional[VisionProvider] = None,
    locks: Optional[EventLocks] = None,
    event_title: Optional[str] = None,
    recursive: bool = False,
    show_progress: bool = True,
) -> Dict[str, Any]:
    """Process every image in a folder into an event.

    The event is created if it does not exist. Each image becomes one photo
    whose original_url and thumbnail_url point at the file.

    Args:
        event_id: Target event
        folder: Folder containing images
        store: Detection store
        settings: Thresholds, provider and timeout (default: built-in defaults)
        provider: Vision provider (default: the one named in settings)
        locks: Event lock registry
        event_title: Title for a newly created event (default: folder name)
        recursive: Descend into subfolders
        show_progress: Show a tqdm progress bar

    Returns:
        Dict with keys: event_id, photos, processed, failed, faces, clusters.

    Raises:
        FileNotFoundError: If the folder doesn't exist
        ValueError: If the path is not a directory
    """
    folder = Path(folder)
    if not folder.exists():
        raise FileNotFoundError(f"Folder not found: {folder}")
    if not folder.is_dir():
        raise ValueError(f"Not a directory: {folder}")

    settings = settings or Settings()
    if provider is None:
        provider = create_vision_provider(
            settings.vision.provider,
            embedding_dim=settings.vision.embedding_dim
        )
    locks = locks or EventLocks(timeout=settings.lock_timeout)

    if store.get_event(event_id) is None:
        store.create_event(title=event_title or folder.name, event_id=event_id)
        logger.info(f"Created event {event_id}")

    image_paths = find_images(folder, recursive)
    logger.info(f"Found {len(image_paths)} images in {folder}")

    summary = {
        'event_id': event_id,
        'photos': 0,
        'processed': 0,
        'failed': 0,
        'faces': 0,
        'clusters': 0,
    }

    processor = PhotoProcessor(
        store,
        provider,
        config=settings.clustering,
        locks=locks,
        timeout=settings.vision.timeout_seconds
    )
    try:
        iterator = tqdm(image_paths, desc="Processing photos", unit="img") if show_progress else image_paths
        for image_path in iterator:
            try:
                image_bytes = image_path.read_bytes()
            except OSError as e:
                logger.error(f"Cannot read {image_path}: {e}")
                summary['failed'] += 1
                continue

            url = image_path.resolve().as_uri()
            photo = store.create_photo(event_id, original_url=url, thumbnail_url=url)
            summary['photos'] += 1

            result = processor.process_photo(photo.id, image_bytes)
            if result.success:
                summary['processed'] += 1
                summary['faces'] += result.faces_persisted
            else:
                summary['failed'] += 1
    finally:
        processor.close()

    summary['clusters'] = len(store.get_clusters_by_event(event_id))
    logger.info(
        f"Event {event_id}: {summary['processed']}/{summary['photos']} photos processed, "
        f"{summary['clusters']} clusters"
    )
    return summary
