"""Connection-resilience layer for authenticated real-time game links."""

__version__ = "0.1.0"
