"""Command-line interface for CrowdLens."""
