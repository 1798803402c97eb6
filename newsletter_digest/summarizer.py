from __future__ import annotations

import logging
import sqlite3
import threading
import time
from datetime import datetime
from typing import Any, Callable, List, Optional, Sequence

from openai import APIConnectionError, OpenAI, RateLimitError

from .config import (
    AGGREGATION_SYSTEM_PROMPT,
    DEFAULT_OLLAMA_BASE_URL,
    DEFAULT_OLLAMA_MODEL,
    SUMMARY_SYSTEM_PROMPT,
    RuntimeConfig,
)
from .errors import AggregationError, SummarizationError
from .models import STATUS_COMPLETED, STATUS_FAILED, AggregatedSummary, ResolvedLink, Summary
from .operation_log import OperationLog
from .prompts import aggregation_user_prompt, summary_user_prompt
from .store import RecordStore
from .utils import elapsed_ms

logger = logging.getLogger(__name__)

TEMPERATURE = 0.3


class RateLimiter:
    """
    Fixed minimum delay before each LLM call.

    The delay is re-read from the runtime config on every wait. One instance is
    shared by every caller so that spacing holds globally.
    """

    def __init__(self, config: RuntimeConfig, sleep: Callable[[float], None] = time.sleep):
        self._config = config
        self._sleep = sleep
        self._lock = threading.Lock()

    def wait(self) -> None:
        delay_ms = self._config.rate_limit_ms()
        with self._lock:
            if delay_ms > 0:
                logger.debug("Waiting %sms before LLM call", delay_ms)
                self._sleep(delay_ms / 1000)


class Summarizer:
    def __init__(
        self,
        store: RecordStore,
        config: RuntimeConfig,
        api_key: str = "",
        base_url: str = DEFAULT_OLLAMA_BASE_URL,
        model: str = DEFAULT_OLLAMA_MODEL,
        client: Optional[Any] = None,
        oplog: Optional[OperationLog] = None,
        rate_limiter: Optional[RateLimiter] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if not model or not model.strip():
            raise ValueError("LLM model must be provided.")
        self._store = store
        self._client = client or OpenAI(api_key=api_key, base_url=base_url)
        self._model = model.strip()
        self._oplog = oplog or OperationLog(store)
        self._rate_limiter = rate_limiter or RateLimiter(config)
        self._clock = clock

    def summarize(self, newsletter_id: int, html_content: str, links: Sequence[ResolvedLink]) -> Summary:
        started = self._clock()
        logger.info("Summarization request: newsletter=%s chars=%s links=%s", newsletter_id, len(html_content), len(links))
        try:
            content = self._complete(SUMMARY_SYSTEM_PROMPT, summary_user_prompt(html_content, links))
            processing_time = elapsed_ms(started, self._clock())
            try:
                summary = self._store.insert_summary(newsletter_id, content, processing_time)
                self._store.update_newsletter_status(newsletter_id, STATUS_COMPLETED)
            except (sqlite3.Error, LookupError) as exc:
                raise SummarizationError(f"Failed to store summary: {exc}", reason="store", cause=exc) from exc
        except Exception as exc:  # noqa: BLE001
            error = exc if isinstance(exc, SummarizationError) else SummarizationError(str(exc), cause=exc)
            self._mark_failed(newsletter_id)
            self._oplog.error(
                "ai_summarize",
                "Failed to summarize newsletter",
                **error.to_details(newsletter_id=newsletter_id),
            )
            if error is exc:
                raise
            raise error from exc

        self._oplog.info(
            "ai_summarize",
            "Successfully summarized newsletter",
            newsletter_id=newsletter_id,
            processing_time_ms=processing_time,
        )
        return summary

    def aggregate(
        self,
        summary_ids: Sequence[int],
        date_range_start: datetime,
        date_range_end: datetime,
    ) -> AggregatedSummary:
        try:
            summaries = self._store.get_summaries(summary_ids)
            if not summaries:
                raise AggregationError("No summaries found for aggregation", details={"summary_ids": list(summary_ids)})
            try:
                content = self._complete(AGGREGATION_SYSTEM_PROMPT, aggregation_user_prompt(summaries))
            except SummarizationError as exc:
                raise AggregationError(exc.message, cause=exc, details={"reason": exc.reason}) from exc
            aggregated = self._store.insert_aggregated_summary(
                content,
                date_range_start,
                date_range_end,
                [s.newsletter_id for s in summaries],
            )
        except Exception as exc:  # noqa: BLE001
            error = exc if isinstance(exc, AggregationError) else AggregationError(str(exc), cause=exc)
            self._oplog.error("ai_aggregate", "Failed to create aggregated summary", **error.to_details())
            if error is exc:
                raise
            raise error from exc

        self._oplog.info(
            "ai_aggregate",
            "Successfully created aggregated summary",
            aggregated_summary_id=aggregated.id,
            newsletter_count=aggregated.newsletter_count,
        )
        return aggregated

    def _complete(self, system_prompt: str, user_prompt: str) -> str:
        for attempt in range(2):
            self._rate_limiter.wait()
            try:
                response = self._client.chat.completions.create(
                    model=self._model,
                    messages=[
                        {"role": "system", "content": system_prompt},
                        {"role": "user", "content": user_prompt},
                    ],
                    temperature=TEMPERATURE,
                )
                break
            except Exception as exc:  # noqa: BLE001
                status_code = _extract_status_code(exc)
                if attempt == 0 and status_code in {502, 503, 504}:
                    logger.warning("LLM transient error (status=%s); retrying once", status_code)
                    continue
                if isinstance(exc, RateLimitError):
                    raise SummarizationError(f"LLM rate limit: {exc}", reason="rate_limit", cause=exc) from exc
                if isinstance(exc, APIConnectionError):
                    raise SummarizationError(f"LLM connection failed: {exc}", reason="connection", cause=exc) from exc
                raise SummarizationError(f"LLM API call failed: {exc}", reason="api", cause=exc) from exc

        choices: List[Any] = getattr(response, "choices", None) or []
        if not choices:
            raise SummarizationError("LLM response has no choices.", reason="empty_response")
        content: Optional[str] = choices[0].message.content
        if not content or not content.strip():
            raise SummarizationError("LLM returned empty content.", reason="empty_response")
        logger.info("LLM completion received (%s chars)", len(content))
        return content.strip()

    def _mark_failed(self, newsletter_id: int) -> None:
        try:
            self._store.update_newsletter_status(newsletter_id, STATUS_FAILED)
        except Exception:  # noqa: BLE001
            logger.exception("Could not mark newsletter %s as failed", newsletter_id)


def _extract_status_code(exc: Exception) -> Optional[int]:
    status_code = getattr(exc, "status_code", None)
    if isinstance(status_code, int):
        return status_code
    response = getattr(exc, "response", None)
    if response is not None:
        code = getattr(response, "status_code", None)
        if isinstance(code, int):
            return code
    return None
