"""Transport layer for upstream calls."""

from upstream_guard.transport.http import HttpUpstream

__all__ = ["HttpUpstream"]
