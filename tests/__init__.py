"""
Sky Color Cache Test Suite

Structure:
- unit/: Unit tests for civil time, scheduling, the snapshot store, the coordinator and the capture pipeline
- integration/: HTTP tests against the FastAPI app over a temporary data directory
"""
