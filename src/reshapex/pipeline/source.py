"""Source image retrieval and domain allow-listing."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING
from urllib.parse import urlparse

import httpx

from reshapex.pipeline.errors import ForbiddenSource, SourceFetchFailure

if TYPE_CHECKING:
    from reshapex.config import Settings

logger = logging.getLogger(__name__)

REMOTE_SCHEMES = frozenset({"http", "https"})


def source_host(reference: str) -> str:
    return urlparse(reference).hostname or ""


class SourceFetcher:
    """Fetches source images from HTTP(S) URLs or local paths."""

    def __init__(self, settings: Settings, client: httpx.Client | None = None) -> None:
        self._restricted = settings.restricted_domains
        self._whitelist = frozenset(domain.lower() for domain in settings.whitelist_domains)
        self._timeout = settings.fetch_timeout
        self._client = client

    def is_allowed(self, reference: str) -> bool:
        if not self._restricted:
            return True
        return source_host(reference).lower() in self._whitelist

    def check_allowed(self, reference: str) -> None:
        """Raise ForbiddenSource if ``reference`` points outside the allow-list."""
        if not self.is_allowed(reference):
            host = source_host(reference)
            logger.warning("Rejected source from non-whitelisted host %r", host)
            raise ForbiddenSource(host)

    def fetch(self, reference: str) -> bytes:
        """Return the raw bytes of ``reference``.

        Raises:
            SourceFetchFailure: If the source is unreachable, unreadable or empty.
        """
        if urlparse(reference).scheme.lower() in REMOTE_SCHEMES:
            content = self._fetch_remote(reference)
        else:
            content = self._fetch_local(reference)

        if not content:
            raise SourceFetchFailure(reference, "empty response")
        return content

    def _fetch_remote(self, url: str) -> bytes:
        try:
            if self._client is not None:
                response = self._client.get(url, follow_redirects=True, timeout=self._timeout)
            else:
                with httpx.Client(timeout=self._timeout) as client:
                    response = client.get(url, follow_redirects=True)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise SourceFetchFailure(url, f"HTTP {exc.response.status_code}") from exc
        except httpx.HTTPError as exc:
            raise SourceFetchFailure(url, str(exc) or type(exc).__name__) from exc
        return response.content

    @staticmethod
    def _fetch_local(path: str) -> bytes:
        try:
            return Path(path).read_bytes()
        except OSError as exc:
            raise SourceFetchFailure(path, exc.strerror or str(exc)) from exc
