"""
Entry codec: bytes for the shared tier, size estimates for the local tier.
"""

import json
import sys
import zlib
from typing import Any

from shared.errors import SerializationError


DEFAULT_COMPRESS_THRESHOLD = 1024


class EntryCodec:
    """
    JSON codec with optional zlib compression.

    Compressed payloads carry a marker prefix. JSON text never starts with a
    NUL byte, so uncompressed payloads can be told apart without a header.
    """

    MAGIC_COMPRESSED = b"\x00\x01\x02\x03"

    def __init__(self, compress_threshold: int = DEFAULT_COMPRESS_THRESHOLD):
        self.compress_threshold = compress_threshold

    def encode(self, value: Any, compress: bool = False) -> bytes:
        """Serialize a value for the shared tier."""
        data = self._dumps(value)

        if not compress or len(data) < self.compress_threshold:
            return data

        compressed = zlib.compress(data, level=1)
        # Only use if actually smaller
        if len(compressed) + len(self.MAGIC_COMPRESSED) < len(data):
            return self.MAGIC_COMPRESSED + compressed
        return data

    def decode(self, data: bytes) -> Any:
        """Deserialize a shared tier payload."""
        if isinstance(data, str):
            data = data.encode("utf-8")

        try:
            if data.startswith(self.MAGIC_COMPRESSED):
                data = zlib.decompress(data[len(self.MAGIC_COMPRESSED):])
            return json.loads(data)
        except (zlib.error, ValueError, UnicodeDecodeError) as exc:
            raise SerializationError(
                "Failed to decode cached payload",
                {"error": str(exc), "size": len(data)},
            ) from exc

    def estimate_size(self, value: Any) -> int:
        """Approximate in-memory footprint used for local tier accounting."""
        try:
            return len(self._dumps(value))
        except SerializationError:
            return sys.getsizeof(value)

    @staticmethod
    def _dumps(value: Any) -> bytes:
        try:
            return json.dumps(value, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
        except (TypeError, ValueError) as exc:
            raise SerializationError(
                "Value is not JSON serializable",
                {"error": str(exc), "type": type(value).__name__},
            ) from exc
