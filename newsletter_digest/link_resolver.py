from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import List, Optional, Sequence

import httpx

from .errors import ResolutionError
from .models import RESOLUTION_FAILED, RESOLUTION_RESOLVED, ExtractedLink, ResolutionResult, ResolvedLink
from .operation_log import OperationLog

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36"
)


class LinkResolver:
    """
    Follows tracked-link redirects with a body-less request.

    `resolve` never raises: every failure comes back as a `failed` result with
    no final URL.
    """

    def __init__(
        self,
        oplog: Optional[OperationLog] = None,
        *,
        transport: httpx.BaseTransport | None = None,
        max_workers: int = 1,
        user_agent: str = DEFAULT_USER_AGENT,
    ):
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1.")
        self._oplog = oplog or OperationLog()
        self._transport = transport
        self._max_workers = max_workers
        self._headers = {"User-Agent": user_agent}

    def resolve(self, url: str, timeout_ms: int) -> ResolutionResult:
        try:
            with httpx.Client(
                headers=self._headers,
                timeout=max(timeout_ms, 0) / 1000,
                follow_redirects=True,
                transport=self._transport,
            ) as client:
                response = client.head(url)
            return ResolutionResult(final_url=str(response.url), status=RESOLUTION_RESOLVED)
        except Exception as exc:  # noqa: BLE001
            failure = ResolutionError(f"Failed to resolve link: {url}", cause=exc, details={"url": url})
            self._oplog.warning("link_resolve", failure.message, **failure.to_details())
            return ResolutionResult(final_url=None, status=RESOLUTION_FAILED, error=str(exc) or type(exc).__name__)

    def resolve_links(self, links: Sequence[ExtractedLink], timeout_ms: int) -> List[ResolvedLink]:
        """Resolve every link, keeping input order in the result."""
        if self._max_workers == 1 or len(links) <= 1:
            results = [self.resolve(link.tracked_url, timeout_ms) for link in links]
        else:
            with ThreadPoolExecutor(max_workers=self._max_workers) as executor:
                results = list(executor.map(lambda link: self.resolve(link.tracked_url, timeout_ms), links))

        resolved = [
            ResolvedLink(
                newsletter_id=link.newsletter_id,
                tracked_url=link.tracked_url,
                final_url=result.final_url,
                associated_text=link.associated_text,
                resolution_status=result.status,
            )
            for link, result in zip(links, results)
        ]
        logger.info(
            "Resolved %s/%s links (timeout=%sms)",
            len([r for r in resolved if r.resolution_status == RESOLUTION_RESOLVED]),
            len(resolved),
            timeout_ms,
        )
        return resolved
