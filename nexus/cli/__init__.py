"""CLI for nexus."""
