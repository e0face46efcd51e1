"""
Record checksums.

Every record carries a checksum of the data it was built from. Comparing the
checksum with the one stored for the previous pass is how a changed row is
told apart from an unchanged one, so the digest must be stable across runs
for the same bytes.
"""

from __future__ import annotations

import hashlib
from typing import Any


SUPPORTED_ALGORITHMS = ("sha1", "md5", "sha256")


class IntegrityChecker:
    """
    Checksum calculator for records.

    Example:
        checker = IntegrityChecker("sha1")

        # Checksum of a serialized row
        checksum = checker.checksum(xml.encode("utf-8"))

        # Two-stage checksum for a row with a large object
        combined = checker.composite_checksum(row_digest, lob_digest)
    """

    def __init__(self, algorithm: str = "sha1") -> None:
        """
        Initialize integrity checker.

        Args:
            algorithm: Hash algorithm ("sha1", "md5" or "sha256")
        """
        if algorithm not in SUPPORTED_ALGORITHMS:
            raise ValueError(f"Unsupported algorithm: {algorithm}")
        self.algorithm = algorithm

    def new_digest(self) -> Any:
        """Get a new hash object for incremental updates."""
        return hashlib.new(self.algorithm)

    def checksum(self, *chunks: bytes) -> str:
        """
        Calculate the hex digest over the concatenated chunks.

        Args:
            *chunks: Byte strings, hashed in order

        Returns:
            Hex digest of checksum
        """
        hasher = self.new_digest()
        for chunk in chunks:
            hasher.update(chunk)
        return hasher.hexdigest()

    def text_checksum(self, text: str) -> str:
        """Checksum of ``text`` encoded as UTF-8."""
        return self.checksum(text.encode("utf-8"))

    def composite_checksum(self, row_digest: str, lob_digest: str) -> str:
        """
        Combine the digest of a row with the digest of its large object.

        Args:
            row_digest: Hex digest of the serialized row without the object
            lob_digest: Hex digest of the object's bytes

        Returns:
            Hex digest of the two digests concatenated
        """
        return self.checksum(row_digest.encode("ascii"), lob_digest.encode("ascii"))
