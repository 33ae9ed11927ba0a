"""causalsync - vector-clock causal tracking between a fixed set of peers."""

__version__ = "0.1.0"
