"""BlobStore protocol and a local-disk reference implementation.

The core never touches bytes directly: uploads, signed URLs, deletes, and
archive reads all go through a ``BlobStore``.  ``LocalBlobStore`` keeps
blobs under a directory and signs URLs with an HMAC so a host application
can serve them from a plain static route.
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import logging
import time
import uuid
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Protocol, runtime_checkable
from urllib.parse import parse_qs, quote, unquote, urlencode, urlsplit

from .exceptions import DependencyUnavailableError
from .utils import split_extension

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 64 * 1024


@runtime_checkable
class BlobStore(Protocol):
    """Byte storage collaborator."""

    url_expires_in: int
    """Seconds a signed URL stays valid."""

    async def put(
        self,
        data: bytes,
        content_type: str,
        *,
        filename: str | None = None,
        owner_id: str | None = None,
    ) -> str:
        """Store *data* and return its opaque key."""
        ...

    async def delete(self, key: str) -> None:
        """Remove the blob at *key*. Missing keys are not an error."""
        ...

    async def get_download_url(self, key: str, filename: str) -> str:
        """Signed URL that downloads *key* as an attachment named *filename*."""
        ...

    async def get_preview_url(self, key: str) -> str:
        """Signed URL that renders *key* inline."""
        ...

    def get_read_stream(self, key: str) -> AsyncIterator[bytes]:
        """Async iterator over the blob's bytes."""
        ...


class LocalBlobStore:
    """Blobs on local disk with HMAC-signed URLs.

    Keys look like ``<prefix>/<owner>/<yyyy>/<mm>/<uuid><ext>``.  All disk
    I/O runs in a worker thread.  ``_resolve`` keeps every key inside
    ``root``.
    """

    def __init__(
        self,
        root: Path | str,
        *,
        base_url: str,
        secret: str | bytes,
        url_expires_in: int = 60,
        prefix: str = "files",
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)
        self.base_url = base_url.rstrip("/")
        self._secret = secret.encode() if isinstance(secret, str) else secret
        self.url_expires_in = url_expires_in
        self.prefix = prefix.strip("/")
        self.chunk_size = chunk_size
        self._clock = clock

    # =========================================================================
    # Key resolution
    # =========================================================================

    def _new_key(self, filename: str | None, owner_id: str | None) -> str:
        now = datetime.now(UTC)
        _, ext = split_extension(filename or "")
        owner = quote(owner_id or "anonymous", safe="")
        return f"{self.prefix}/{owner}/{now:%Y}/{now:%m}/{uuid.uuid4()}{ext.lower()}"

    def _resolve(self, key: str) -> Path:
        candidate = (self.root / key.lstrip("/")).resolve()
        try:
            candidate.relative_to(self.root)
        except ValueError:
            raise PermissionError(f"Blob key escapes storage root: {key}") from None
        return candidate

    # =========================================================================
    # Bytes
    # =========================================================================

    async def put(
        self,
        data: bytes,
        content_type: str,
        *,
        filename: str | None = None,
        owner_id: str | None = None,
    ) -> str:
        key = self._new_key(filename, owner_id)
        target = self._resolve(key)

        def _write() -> None:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)

        try:
            await asyncio.to_thread(_write)
        except OSError as e:
            raise DependencyUnavailableError(f"Blob write failed for {key}: {e}") from e
        logger.debug("Stored blob %s (%d bytes, %s)", key, len(data), content_type)
        return key

    async def delete(self, key: str) -> None:
        target = self._resolve(key)
        try:
            await asyncio.to_thread(target.unlink, missing_ok=True)
        except OSError as e:
            raise DependencyUnavailableError(f"Blob delete failed for {key}: {e}") from e

    async def exists(self, key: str) -> bool:
        return await asyncio.to_thread(self._resolve(key).is_file)

    async def get_read_stream(self, key: str) -> AsyncIterator[bytes]:
        target = self._resolve(key)
        try:
            fh = await asyncio.to_thread(target.open, "rb")
        except OSError as e:
            raise DependencyUnavailableError(f"Blob read failed for {key}: {e}") from e
        try:
            while True:
                try:
                    chunk = await asyncio.to_thread(fh.read, self.chunk_size)
                except OSError as e:
                    raise DependencyUnavailableError(f"Blob read failed for {key}: {e}") from e
                if not chunk:
                    return
                yield chunk
        finally:
            await asyncio.to_thread(fh.close)

    # =========================================================================
    # Signed URLs
    # =========================================================================

    def _signature(self, key: str, expires: int, disposition: str, filename: str) -> str:
        message = f"{key}\n{expires}\n{disposition}\n{filename}".encode()
        return hmac.new(self._secret, message, hashlib.sha256).hexdigest()

    def _sign(self, key: str, disposition: str, filename: str = "") -> str:
        expires = int(self._clock()) + self.url_expires_in
        query = {"expires": str(expires), "disposition": disposition}
        if filename:
            query["filename"] = filename
        query["signature"] = self._signature(key, expires, disposition, filename)
        return f"{self.base_url}/{quote(key)}?{urlencode(query)}"

    async def get_download_url(self, key: str, filename: str) -> str:
        return self._sign(key, "attachment", filename)

    async def get_preview_url(self, key: str) -> str:
        return self._sign(key, "inline")

    def verify_url(self, url: str) -> str | None:
        """Return the blob key a signed URL grants, or None if invalid or expired."""
        parts = urlsplit(url)
        base = urlsplit(self.base_url)
        base_path = base.path.rstrip("/") + "/"
        if not parts.path.startswith(base_path):
            return None
        key = unquote(parts.path[len(base_path):])
        query = {k: v[0] for k, v in parse_qs(parts.query).items()}
        try:
            expires = int(query["expires"])
            disposition = query["disposition"]
            signature = query["signature"]
        except (KeyError, ValueError):
            return None
        expected = self._signature(key, expires, disposition, query.get("filename", ""))
        if not hmac.compare_digest(expected, signature):
            return None
        if expires < self._clock():
            return None
        return key
