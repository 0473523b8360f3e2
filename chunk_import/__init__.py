"""Streaming, chunked import engine with rule validation and per-chunk transactions."""

__version__ = "0.1.0"
