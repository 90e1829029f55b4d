"""nexus: memory-augmented chat turns over a per-project temporal graph."""

__version__ = "0.1.0"
