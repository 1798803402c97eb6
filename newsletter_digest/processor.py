from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, List, Optional

from .config import AGGREGATION_WINDOW_HOURS, MIN_SUMMARIES_FOR_AGGREGATION, RuntimeConfig, Settings
from .errors import error_details
from .gmail_client import GmailClient
from .link_extractor import extract_links
from .link_resolver import LinkResolver
from .models import (
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_PROCESSING,
    BatchReport,
    Newsletter,
    NewsletterResult,
)
from .operation_log import OperationLog
from .store import RecordStore
from .summarizer import Summarizer
from .utils import utc_now, window_start

logger = logging.getLogger(__name__)


class NewsletterProcessor:
    """
    Drives one batch: fetch, persist, then per newsletter extract, resolve,
    store links and summarize, followed by an aggregation attempt.

    A failing newsletter is marked failed and the batch moves on to the next
    one. Only mail-source failures abort the batch.
    """

    def __init__(
        self,
        store: RecordStore,
        mail_source: GmailClient,
        resolver: LinkResolver,
        summarizer: Summarizer,
        config: Optional[RuntimeConfig] = None,
        oplog: Optional[OperationLog] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._store = store
        self._mail_source = mail_source
        self._resolver = resolver
        self._summarizer = summarizer
        self._config = config or RuntimeConfig(store)
        self._oplog = oplog or OperationLog(store)
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: Settings, store: RecordStore) -> "NewsletterProcessor":
        oplog = OperationLog(store)
        config = RuntimeConfig(store)
        return cls(
            store=store,
            mail_source=GmailClient.from_settings(settings, oplog),
            resolver=LinkResolver(oplog),
            summarizer=Summarizer(
                store,
                config,
                api_key=settings.ollama_api_key,
                base_url=settings.ollama_base_url,
                model=settings.ollama_model,
                oplog=oplog,
            ),
            config=config,
            oplog=oplog,
        )

    def process_new_newsletters(self) -> BatchReport:
        report = BatchReport()
        try:
            self._oplog.info("process_start", "Starting newsletter processing job")

            emails = self._mail_source.fetch_unprocessed(self._store.existing_message_ids())
            report.fetched = len(emails)
            if not emails:
                self._oplog.info("process_complete", "No new newsletters to process")
                return report

            saved = self._store.save_newsletters(emails)
            self._oplog.info("gmail_save", f"Saved {len(saved)} newsletters to database")

            for idx, newsletter in enumerate(saved, start=1):
                logger.info("---- Processing newsletter %s/%s ----", idx, len(saved))
                report.results.append(self._process_single(newsletter))

            report.aggregated_summary_id = self.create_aggregated_summary()

            self._oplog.info(
                "process_complete",
                f"Processed {len(saved)} newsletters",
                succeeded=report.succeeded,
                failed=report.failed,
            )
            return report
        except Exception as exc:  # noqa: BLE001
            self._oplog.error("process_error", "Newsletter processing job failed", **error_details(exc))
            raise

    def manual_trigger(self) -> BatchReport:
        self._oplog.info("manual_trigger", "Manual processing triggered")
        return self.process_new_newsletters()

    def reprocess_newsletter(self, newsletter_id: int) -> NewsletterResult:
        """Explicit external reset of one newsletter to pending, then a fresh pass over it."""
        newsletter = self._store.get_newsletter(newsletter_id)
        if newsletter is None:
            raise LookupError(f"Newsletter {newsletter_id} not found")

        self._oplog.info(
            "reprocess",
            "Reprocessing newsletter",
            newsletter_id=newsletter_id,
            previous_status=newsletter.processed_status,
        )
        self._store.update_newsletter_status(newsletter_id, STATUS_PENDING)
        newsletter.processed_status = STATUS_PENDING
        result = self._process_single(newsletter)
        self.create_aggregated_summary()
        return result

    def _process_single(self, newsletter: Newsletter) -> NewsletterResult:
        if newsletter.processed_status != STATUS_PENDING:
            logger.warning(
                "Skipping newsletter %s in terminal status %s", newsletter.id, newsletter.processed_status
            )
            return NewsletterResult(newsletter=newsletter, status=newsletter.processed_status)

        logger.info("Newsletter id=%s subject=%s", newsletter.id, newsletter.subject)
        link_count = 0
        try:
            self._store.update_newsletter_status(newsletter.id, STATUS_PROCESSING)

            extracted = extract_links(newsletter.id, newsletter.html_content, self._oplog)
            timeout_ms = self._config.link_resolution_timeout_ms()
            resolved = self._resolver.resolve_links(extracted, timeout_ms)
            self._store.save_links(resolved)
            link_count = len(resolved)
            self._oplog.info("link_save", f"Saved {link_count} links to database", newsletter_id=newsletter.id)

            self._summarizer.summarize(newsletter.id, newsletter.html_content, resolved)
        except Exception as exc:  # noqa: BLE001
            self._oplog.error(
                "process_newsletter",
                "Failed to process newsletter",
                **error_details(exc, newsletter_id=newsletter.id),
            )
            self._ensure_failed(newsletter.id)
            return NewsletterResult(
                newsletter=newsletter,
                status=STATUS_FAILED,
                link_count=link_count,
                error=str(exc),
            )

        self._oplog.info(
            "process_newsletter",
            "Successfully processed newsletter",
            newsletter_id=newsletter.id,
            subject=newsletter.subject,
        )
        return NewsletterResult(newsletter=newsletter, status=STATUS_COMPLETED, link_count=link_count)

    def create_aggregated_summary(self) -> Optional[int]:
        """
        Merge the trailing-window summaries into one aggregate.

        Best effort: skips when fewer than two summaries are recent or when any
        of their newsletters already belongs to an aggregate, and swallows
        failures after logging them.
        """
        try:
            since = window_start(self._clock(), AGGREGATION_WINDOW_HOURS)
            recent = self._store.recent_summaries(since)

            if len(recent) < MIN_SUMMARIES_FOR_AGGREGATION:
                self._oplog.info("aggregate_skip", "Not enough summaries for aggregation", summary_count=len(recent))
                return None

            newsletter_ids: List[int] = [s.newsletter_id for s in recent]
            if self._store.any_aggregated(newsletter_ids):
                self._oplog.info("aggregate_skip", "Aggregation already exists for these newsletters")
                return None

            # recent is newest first
            date_range_start = recent[-1].created_at
            date_range_end = recent[0].created_at
            aggregated = self._summarizer.aggregate([s.id for s in recent], date_range_start, date_range_end)

            self._oplog.info(
                "aggregate_complete",
                "Successfully created aggregated summary",
                summary_count=len(recent),
                aggregated_summary_id=aggregated.id,
            )
            return aggregated.id
        except Exception as exc:  # noqa: BLE001
            self._oplog.error("aggregate_error", "Failed to create aggregated summary", **error_details(exc))
            return None

    def _ensure_failed(self, newsletter_id: int) -> None:
        try:
            current = self._store.get_newsletter(newsletter_id)
            if current is not None and current.processed_status != STATUS_FAILED:
                self._store.update_newsletter_status(newsletter_id, STATUS_FAILED)
        except Exception:  # noqa: BLE001
            logger.exception("Could not mark newsletter %s as failed", newsletter_id)
