from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

STATUS_PENDING = "pending"
STATUS_PROCESSING = "processing"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"
NEWSLETTER_STATUSES = (STATUS_PENDING, STATUS_PROCESSING, STATUS_COMPLETED, STATUS_FAILED)

RESOLUTION_RESOLVED = "resolved"
RESOLUTION_FAILED = "failed"

LOG_INFO = "info"
LOG_WARNING = "warning"
LOG_ERROR = "error"
LOG_TYPES = (LOG_INFO, LOG_WARNING, LOG_ERROR)

_TIME_SLOT = re.compile(r"^([01]?\d|2[0-3]):([0-5]\d)$")


@dataclass
class RawEmail:
    gmail_message_id: str
    subject: str
    sender: str
    received_at: datetime
    html_content: str


@dataclass
class Newsletter:
    id: int
    gmail_message_id: str
    subject: str
    sender: str
    received_at: datetime
    html_content: str
    processed_status: str
    created_at: datetime
    updated_at: datetime


@dataclass
class ExtractedLink:
    newsletter_id: int
    tracked_url: str
    associated_text: str


@dataclass(frozen=True)
class ResolutionResult:
    final_url: Optional[str]
    status: str  # "resolved" | "failed"
    error: Optional[str] = None

    def is_resolved(self) -> bool:
        return self.status == RESOLUTION_RESOLVED


@dataclass
class ResolvedLink:
    newsletter_id: int
    tracked_url: str
    final_url: Optional[str]
    associated_text: str
    resolution_status: str


@dataclass
class Link:
    id: int
    newsletter_id: int
    tracked_url: str
    final_url: Optional[str]
    associated_text: str
    resolution_status: str
    created_at: datetime


@dataclass
class Summary:
    id: int
    newsletter_id: int
    markdown_content: str
    processing_time_ms: int
    created_at: datetime
    superseded: bool = False


@dataclass
class AggregatedSummary:
    id: int
    markdown_content: str
    date_range_start: datetime
    date_range_end: datetime
    newsletter_count: int
    created_at: datetime


@dataclass
class ProcessingLog:
    id: int
    log_type: str
    operation: str
    message: str
    details: Dict[str, Any]
    created_at: datetime


@dataclass
class CronSchedule:
    times: List[str]
    timezone: str

    @staticmethod
    def parse_slot(slot: str) -> tuple[int, int]:
        match = _TIME_SLOT.match(slot.strip())
        if not match:
            raise ValueError(f"Invalid schedule time (expected HH:MM): {slot!r}")
        return int(match.group(1)), int(match.group(2))

    @staticmethod
    def from_value(value: Any, default_times: Sequence[str], default_timezone: str) -> "CronSchedule":
        if not isinstance(value, dict):
            raise ValueError("cron schedule must be an object with 'times' and 'timezone'")
        times = value.get("times") or list(default_times)
        if not isinstance(times, list) or not all(isinstance(t, str) for t in times):
            raise ValueError("cron schedule 'times' must be a list of HH:MM strings")
        for slot in times:
            CronSchedule.parse_slot(slot)
        timezone_name = value.get("timezone") or default_timezone
        if not isinstance(timezone_name, str):
            raise ValueError("cron schedule 'timezone' must be a string")
        try:
            ZoneInfo(timezone_name)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"Unknown timezone: {timezone_name}") from exc
        return CronSchedule(times=[t.strip() for t in times], timezone=timezone_name)


@dataclass
class NewsletterResult:
    newsletter: Newsletter
    status: str  # "completed" | "failed"
    link_count: int = 0
    error: Optional[str] = None

    def is_success(self) -> bool:
        return self.status == STATUS_COMPLETED


@dataclass
class BatchReport:
    fetched: int = 0
    results: List[NewsletterResult] = field(default_factory=list)
    aggregated_summary_id: Optional[int] = None

    @property
    def succeeded(self) -> int:
        return len([r for r in self.results if r.is_success()])

    @property
    def failed(self) -> int:
        return len([r for r in self.results if not r.is_success()])
