from __future__ import annotations

import logging
import re
from typing import List, Optional

from lxml import etree, html

from .config import CONTEXT_FALLBACK_CHARS, MAX_CONTEXT_ANCESTORS, MIN_CONTEXT_CHARS, TRACKING_LINK_PATTERN
from .errors import ExtractionError
from .models import ExtractedLink
from .operation_log import OperationLog

logger = logging.getLogger(__name__)

_TRACKING_RE = re.compile(TRACKING_LINK_PATTERN, re.IGNORECASE)
_SENTENCE_SPLIT_RE = re.compile(r"[.!?]+")


def is_tracked_link(href: Optional[str]) -> bool:
    return bool(href) and _TRACKING_RE.search(href) is not None  # type: ignore[arg-type]


def extract_links(newsletter_id: int, html_text: str, oplog: Optional[OperationLog] = None) -> List[ExtractedLink]:
    """Return every tracked link in document order with its best-effort context text."""
    oplog = oplog or OperationLog()
    if not html_text or not html_text.strip():
        oplog.info("link_extract", "Extracted 0 tracked links (blank document)", newsletter_id=newsletter_id)
        return []
    try:
        tree = _parse(html_text)
    except (etree.ParserError, ValueError) as exc:
        oplog.error("link_extract", "Failed to extract links", newsletter_id=newsletter_id, error=str(exc))
        raise ExtractionError(
            f"HTML parsing failed: {exc}", cause=exc, details={"newsletter_id": newsletter_id}
        ) from exc

    links: List[ExtractedLink] = []
    for anchor in tree.iter("a"):
        href = anchor.get("href")
        if not is_tracked_link(href):
            continue
        links.append(
            ExtractedLink(
                newsletter_id=newsletter_id,
                tracked_url=href,  # type: ignore[arg-type]
                associated_text=associated_text(anchor),
            )
        )

    oplog.info("link_extract", f"Extracted {len(links)} tracked links", newsletter_id=newsletter_id)
    return links


def associated_text(anchor: html.HtmlElement) -> str:
    link_text = _text(anchor)
    context = link_text

    parent = anchor.getparent()
    if len(context) < MIN_CONTEXT_CHARS and parent is not None:
        context = _text(parent)

    if len(context) < MIN_CONTEXT_CHARS:
        # Starts at the parent itself and climbs; keeps the longest text seen.
        current = parent
        for _ in range(MAX_CONTEXT_ANCESTORS):
            if current is None:
                break
            text = _text(current)
            if len(text) > len(context):
                context = text
            current = current.getparent()

    return pick_sentence(context, link_text)


def pick_sentence(context: str, link_text: str) -> str:
    sentences = _SENTENCE_SPLIT_RE.split(context)
    matching = next((s for s in sentences if link_text in s), None)
    relevant = matching or sentences[0] or context
    return relevant.strip() or context[:CONTEXT_FALLBACK_CHARS]


def _parse(html_text: str) -> html.HtmlElement:
    try:
        return html.fromstring(html_text)
    except ValueError:
        # lxml refuses str input that carries an XML encoding declaration.
        return html.fromstring(html_text.encode("utf-8"))


def _text(element: html.HtmlElement) -> str:
    return element.text_content().strip()
