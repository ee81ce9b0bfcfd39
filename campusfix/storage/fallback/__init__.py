"""Local fallback cache."""

from campusfix.storage.fallback.fallback_store import FallbackStore
from campusfix.storage.fallback.file_fallback_store import FileFallbackStore

__all__ = ['FallbackStore', 'FileFallbackStore']
