"""Unit tests for the deployment orchestrator.

Unit tests verify individual components in isolation using the in-memory
cluster, mock HTTP transports and mocks. No cluster or network is required.

Run with: pytest tests/unit/ -v
"""
