"""
Client-side cache mirror for applications consuming the proxy.
"""
from .mirror import ClientCacheMirror, category_for_path, request_key

__all__ = [
    "ClientCacheMirror",
    "category_for_path",
    "request_key",
]
