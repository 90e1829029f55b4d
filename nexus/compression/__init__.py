"""Pinned-context compression collaborator."""

from nexus.compression.client import CompressionClient, CompressionPolicy, CompressionResult

__all__ = ["CompressionClient", "CompressionPolicy", "CompressionResult"]
