"""Filesystem-backed LRU blob cache with CAS, AC and RAW keyspaces and chunked zstd storage."""

__version__ = "0.1.0"
__all__ = ["__version__"]