"""Clustering and search over event photos.

This module provides:
- ClusterAssigner for incremental assignment and re-clustering
- SearchEngine for face, bib and clothing queries
- Result ranking, filtering and formatting utilities

Usage:
    from crowdlens.search import ClusterAssigner, SearchEngine

    assigner = ClusterAssigner(store)
    assigner.assign(face, event_id)

    engine = SearchEngine(store)
    results = engine.search_by_bib(event_id, '1427')
"""

from .clustering import (
    AssignmentResult,
    ClusterAssigner,
    find_best_cluster,
    group_by_cluster,
    recluster_event,
)
from .engine import SearchEngine, normalize_bib, score_clothing, validate_filters
from .results import (
    rank_results,
    format_results_simple,
    filter_results,
    export_results_json,
)

__all__ = [
    # Clustering
    'AssignmentResult',
    'ClusterAssigner',
    'find_best_cluster',
    'group_by_cluster',
    'recluster_event',

    # Engine
    'SearchEngine',
    'normalize_bib',
    'score_clothing',
    'validate_filters',

    # Result formatting
    'rank_results',
    'format_results_simple',
    'filter_results',
    'export_results_json',
]
