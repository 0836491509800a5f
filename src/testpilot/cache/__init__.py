"""Content-addressed result cache."""

from testpilot.cache.hasher import ContentHasher, fingerprint, fingerprint_file
from testpilot.cache.repository import ResultCache

__all__ = [
    "ContentHasher",
    "ResultCache",
    "fingerprint",
    "fingerprint_file",
]
