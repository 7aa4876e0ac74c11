"""Rate-limited, cache-backed outbound fetch layer for media provider APIs."""

__version__ = "1.0.0"
