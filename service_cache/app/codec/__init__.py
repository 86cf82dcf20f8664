"""
Value encoding for the shared tier and size estimation for the local tier.
"""

from .entry_codec import EntryCodec, DEFAULT_COMPRESS_THRESHOLD

__all__ = ["EntryCodec", "DEFAULT_COMPRESS_THRESHOLD"]
