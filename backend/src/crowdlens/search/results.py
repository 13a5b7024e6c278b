"""Result formatting and ranking utilities.

This module provides utilities for ranking, filtering and formatting
cluster search results for display or export.
"""

from typing import List, Dict, Any, Optional, Callable, Union
import json
from pathlib import Path

from ..models import ClusterSearchResult

PREVIEW_LIMIT = 5


def rank_results(
    results: List[ClusterSearchResult],
    key: Optional[Callable[[ClusterSearchResult], float]] = None,
    reverse: bool = True
) -> List[ClusterSearchResult]:
    """Rank search results by a custom key.

    Args:
        results: List of search results
        key: Function to extract ranking key (default: similarity score)
        reverse: If True, sort in descending order (default for similarity)

    Returns:
        Ranked list of ClusterSearchResult objects with updated rank fields
    """
    if key is None:
        key = lambda r: r.similarity

    # Sort results (stable, so equal scores keep discovery order)
    sorted_results = sorted(results, key=key, reverse=reverse)

    # Update rank numbers
    for rank, result in enumerate(sorted_results, start=1):
        result.rank = rank

    return sorted_results


def format_results_simple(
    results: List[ClusterSearchResult],
    max_results: Optional[int] = None
) -> List[Dict[str, Any]]:
    """Format search results in simple dictionary format.

    Args:
        results: List of search results
        max_results: Maximum results to include

    Returns:
        List of dictionaries with simplified result data
    """
    formatted = []

    for result in results[:max_results] if max_results else results:
        cluster = result.cluster
        formatted.append({
            'rank': result.rank,
            'cluster': {
                'id': cluster.id,
                'display_name': cluster.display_name,
                'tags': list(cluster.tags),
                'face_count': cluster.face_count,
                'photo_count': cluster.photo_count,
                'representative_thumbnail_url': cluster.representative_thumbnail_url,
                'is_claimed': cluster.is_claimed,
            },
            'similarity': round(result.similarity, 2),
            'matching_photos': [
                p.to_dict() for p in result.matching_photos[:PREVIEW_LIMIT]
            ],
            'total_photo_count': result.total_photo_count,
        })

    return formatted


def filter_results(
    results: List[ClusterSearchResult],
    min_similarity: Optional[float] = None,
    claimed: Optional[bool] = None
) -> List[ClusterSearchResult]:
    """Filter search results by criteria.

    Args:
        results: List of search results
        min_similarity: Minimum similarity score
        claimed: If set, keep only claimed (True) or unclaimed (False) clusters

    Returns:
        Filtered list of results
    """
    filtered = results

    if min_similarity is not None:
        filtered = [r for r in filtered if r.similarity >= min_similarity]

    if claimed is not None:
        filtered = [r for r in filtered if r.cluster.is_claimed == claimed]

    return filtered


def export_results_json(
    results: List[ClusterSearchResult],
    output_path: Union[str, Path],
    indent: int = 2
):
    """Export search results to JSON file.

    Args:
        results: List of search results
        output_path: Path to output JSON file
        indent: JSON indentation level
    """
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    data = {
        'total_results': len(results),
        'results': [r.to_dict() for r in results]
    }

    with open(output_path, 'w') as f:
        json.dump(data, f, indent=indent)
