"""
Filesystem blob store — downloaded XML and uploaded inputs on local disk.

Adapter layer — implements the BlobStore port.

Locators are POSIX paths relative to the configured root. A locator that
resolves outside the root (absolute path, `..` segments) is refused, so a
stored locator can never be used to read arbitrary files.
"""

from __future__ import annotations

from pathlib import Path

import structlog

from nfce_retrieval.domain.failure import ErrorCode
from nfce_retrieval.domain.result import Result

log = structlog.get_logger()


class FilesystemBlobStore:
    """Store blobs under a single root directory."""

    def __init__(self, root: Path | str) -> None:
        self._root = Path(root).resolve()

    @property
    def root(self) -> Path:
        return self._root

    def persist_blob(self, path: str, data: bytes) -> Result[str]:
        """Write `data` at `path` (created or overwritten); returns the locator."""
        return Result.from_computation(
            lambda: self._write(path, data),
            ErrorCode.STORAGE_ERROR,
            f"Failed to store blob {path!r}",
        )

    def read_blob(self, locator: str) -> Result[bytes]:
        return Result.from_computation(
            lambda: self._resolve(locator).read_bytes(),
            ErrorCode.STORAGE_ERROR,
            f"Failed to read blob {locator!r}",
        )

    def _write(self, path: str, data: bytes) -> str:
        target = self._resolve(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        tmp = target.with_name(target.name + ".part")
        tmp.write_bytes(data)
        tmp.replace(target)
        locator = target.relative_to(self._root).as_posix()
        log.info("storage.blob_written", locator=locator, size_bytes=len(data))
        return locator

    def _resolve(self, locator: str) -> Path:
        target = (self._root / locator).resolve()
        if not target.is_relative_to(self._root) or target == self._root:
            raise ValueError(f"locator {locator!r} escapes the storage root")
        return target
