"""Content-addressed, immutable snapshot store.

Holds file snapshots, checkpoint manifests, plan documents, diffs and
test output.  Storage layout: {base_path}/{sha256[0:2]}/{sha256[2:4]}/{sha256}.dat

There is no delete method: checkpoints released after commit keep their
blobs, so later file- or wave-scoped rollbacks can still reach them.
"""

from __future__ import annotations

import uuid
from pathlib import Path
from typing import Any

from wavegate.core.hasher import canonical_json_bytes, sha256_hex


class SnapshotIntegrityError(RuntimeError):
    """Raised when a stored blob's hash does not match its address."""


class ContentAddressedStore:
    """SHA-256 keyed, immutable blob store.

    Storing the same content twice is a no-op (idempotent).

    Parameters
    ----------
    base_path:
        Root directory for blob storage.
    """

    def __init__(self, base_path: Path) -> None:
        self._base = Path(base_path)
        self._base.mkdir(parents=True, exist_ok=True)

    @staticmethod
    def _extract_digest(address: str) -> str:
        return address.removeprefix("sha256:")

    def _blob_path(self, digest: str) -> Path:
        return self._base / digest[:2] / digest[2:4] / f"{digest}.dat"

    # ------------------------------------------------------------------
    # Store
    # ------------------------------------------------------------------

    def store(self, data: bytes) -> str:
        """Store bytes and return their ``sha256:<hex>`` address.

        If the content already exists, verifies integrity and returns the
        existing address without overwriting.
        """
        digest = sha256_hex(data)
        path = self._blob_path(digest)

        if path.exists():
            if not self.verify(digest):
                raise SnapshotIntegrityError(
                    f"Existing blob at {digest} failed integrity check"
                )
        else:
            path.parent.mkdir(parents=True, exist_ok=True)
            # Write-then-rename so a crash never leaves a torn blob.
            tmp = path.with_suffix(f".{uuid.uuid4().hex[:8]}.tmp")
            tmp.write_bytes(data)
            tmp.replace(path)

        return f"sha256:{digest}"

    def store_text(self, text: str) -> str:
        return self.store(text.encode("utf-8"))

    def store_json(self, obj: Any) -> str:
        return self.store(canonical_json_bytes(obj))

    # ------------------------------------------------------------------
    # Retrieve
    # ------------------------------------------------------------------

    def retrieve(self, address: str) -> bytes:
        """Retrieve blob bytes by address.

        Parameters
        ----------
        address:
            Either "sha256:<hex>" or just the hex digest.
        """
        digest = self._extract_digest(address)
        path = self._blob_path(digest)
        if not path.exists():
            raise FileNotFoundError(f"Snapshot blob not found: {address}")
        data = path.read_bytes()
        if sha256_hex(data) != digest:
            raise SnapshotIntegrityError(f"Blob {address} failed integrity check")
        return data

    def retrieve_text(self, address: str) -> str:
        return self.retrieve(address).decode("utf-8")

    # ------------------------------------------------------------------
    # Check and verify
    # ------------------------------------------------------------------

    def exists(self, address: str) -> bool:
        return self._blob_path(self._extract_digest(address)).exists()

    def verify(self, address: str) -> bool:
        """Re-hash stored data and compare against the address."""
        digest = self._extract_digest(address)
        path = self._blob_path(digest)
        if not path.exists():
            return False
        return sha256_hex(path.read_bytes()) == digest
