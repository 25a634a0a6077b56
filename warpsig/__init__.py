"""Warp message signature aggregation with quorum checks, caching, metrics, config and a WSGI API."""

__version__ = "0.1.0"