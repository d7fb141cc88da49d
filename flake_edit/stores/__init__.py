"""JSON-backed caches kept under the cache directory."""

from .pin_store import PinStore
from .uri_cache import DEFAULT_PREFIXES, UriCache

__all__ = ["DEFAULT_PREFIXES", "PinStore", "UriCache"]
