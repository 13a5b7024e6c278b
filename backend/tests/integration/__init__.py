"""Integration tests for face search system.

These tests verify the complete end-to-end functionality including:
- Face detection and indexing
- Collection management and persistence
- Search accuracy and performance
- Clustering and identity grouping
"""
