"""DriveConfig: tunables shared by every service."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class DriveConfig:
    """Runtime limits and timings for an Arbor instance."""

    max_folder_depth: int = 2
    """Folders may only be created at depth ``< max_folder_depth`` (root is depth 0)."""

    url_expires_in: int = 60
    """Validity window, in seconds, of signed download/preview URLs."""

    url_cache_margin: int = 5
    """URLs are cached for ``url_expires_in - url_cache_margin`` seconds."""

    public_code_bytes: int = 4
    """Random bytes per public-link code (rendered as hex)."""

    public_code_attempts: int = 5
    """Bounded retries when a generated public code collides."""

    trash_retention_days: int = 30
    """Age after which trashed rows are purged by the retention sweep."""

    search_limit: int = 200
    """Maximum number of search hits returned."""

    export_chunk_size: int = 64 * 1024
    """Target size of the byte chunks yielded by the zip stream."""

    def __post_init__(self) -> None:
        if self.max_folder_depth < 1:
            raise ValueError("max_folder_depth must be at least 1")
        if self.url_expires_in <= 0:
            raise ValueError("url_expires_in must be positive")
        if not 0 <= self.url_cache_margin < self.url_expires_in:
            raise ValueError("url_cache_margin must be in [0, url_expires_in)")
        if self.public_code_bytes < 1 or self.public_code_attempts < 1:
            raise ValueError("public code settings must be positive")
        if self.trash_retention_days < 0:
            raise ValueError("trash_retention_days must not be negative")
        if self.search_limit < 1 or self.export_chunk_size < 1:
            raise ValueError("search_limit and export_chunk_size must be positive")

    @property
    def url_cache_ttl(self) -> int:
        """Seconds a signed URL may be served from cache."""
        return self.url_expires_in - self.url_cache_margin
