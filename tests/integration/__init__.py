"""Integration tests for the deployment orchestrator.

Integration tests drive complete orchestration runs against the in-memory
cluster, including the shipped example graph.

Run with: pytest tests/integration/ -v
"""
