from __future__ import annotations

import sqlite3
from datetime import datetime, timedelta, timezone

import pytest

from newsletter_digest.models import RawEmail, ResolvedLink
from newsletter_digest.store import RecordStore


def _email(message_id: str) -> RawEmail:
    return RawEmail(message_id, "Subject", "sender@example.com", datetime(2025, 3, 4, tzinfo=timezone.utc), "<p>x</p>")


def test_save_newsletters_skips_known_message_ids(store):
    first = store.save_newsletters([_email("a"), _email("b")])
    again = store.save_newsletters([_email("b"), _email("c")])

    assert [n.gmail_message_id for n in first] == ["a", "b"]
    assert [n.gmail_message_id for n in again] == ["c"]
    assert store.existing_message_ids() == {"a", "b", "c"}
    assert all(n.processed_status == "pending" for n in store.list_newsletters())


def test_status_updates_validate_input(store):
    newsletter = store.save_newsletters([_email("a")])[0]
    store.update_newsletter_status(newsletter.id, "processing")
    assert [n.id for n in store.list_newsletters("processing")] == [newsletter.id]

    with pytest.raises(ValueError):
        store.update_newsletter_status(newsletter.id, "archived")
    with pytest.raises(LookupError):
        store.update_newsletter_status(999, "failed")


def test_links_round_trip_in_insert_order(store):
    newsletter = store.save_newsletters([_email("a")])[0]
    store.save_links(
        [
            ResolvedLink(newsletter.id, "https://link.mail.beehiiv.com/1", "https://example.com/1", "one", "resolved"),
            ResolvedLink(newsletter.id, "https://link.mail.beehiiv.com/2", None, "two", "failed"),
        ]
    )
    links = store.links_for_newsletter(newsletter.id)
    assert [(link.final_url, link.resolution_status) for link in links] == [
        ("https://example.com/1", "resolved"),
        (None, "failed"),
    ]


def test_links_require_existing_newsletter(store):
    with pytest.raises(sqlite3.IntegrityError):
        store.save_links([ResolvedLink(42, "https://link.mail.beehiiv.com/1", None, "x", "failed")])


def test_new_summary_supersedes_previous(store):
    newsletter = store.save_newsletters([_email("a")])[0]
    old = store.insert_summary(newsletter.id, "old", 10)
    new = store.insert_summary(newsletter.id, "new", 12)

    assert store.summary_for_newsletter(newsletter.id).id == new.id
    assert [s.id for s in store.get_summaries([old.id, new.id])] == [new.id]
    assert [s.id for s in store.recent_summaries(old.created_at - timedelta(seconds=1))] == [new.id]


def test_recent_summaries_newest_first_within_window(store):
    now = datetime(2025, 3, 5, 12, tzinfo=timezone.utc)
    ids = []
    for idx, hours in enumerate([30, 3, 1]):
        newsletter = store.save_newsletters([_email(f"n{idx}")])[0]
        ids.append(store.insert_summary(newsletter.id, f"s{idx}", 1, created_at=now - timedelta(hours=hours)).id)

    recent = store.recent_summaries(now - timedelta(hours=24))
    assert [s.id for s in recent] == [ids[2], ids[1]]


def test_newsletter_belongs_to_at_most_one_aggregate(store):
    a, b = store.save_newsletters([_email("a"), _email("b")])
    now = datetime(2025, 3, 5, tzinfo=timezone.utc)
    aggregated = store.insert_aggregated_summary("digest", now, now, [a.id])

    assert store.any_aggregated([a.id, b.id])
    assert not store.any_aggregated([b.id])
    assert not store.any_aggregated([])
    assert aggregated.newsletter_count == 1
    with pytest.raises(sqlite3.IntegrityError):
        store.insert_aggregated_summary("again", now, now, [b.id, a.id])
    assert [s.id for s in store.list_aggregated_summaries()] == [aggregated.id]
    assert not store.any_aggregated([b.id])


def test_config_values_are_json(store):
    assert store.get_config("missing") is None
    store.set_config("cron_schedule", {"times": ["06:00"], "timezone": "UTC"})
    store.set_config("ollama_rate_limit_ms", 500)
    store.set_config("ollama_rate_limit_ms", 750)
    assert store.get_config("cron_schedule") == {"times": ["06:00"], "timezone": "UTC"}
    assert store.get_config("ollama_rate_limit_ms") == 750


def test_logs_are_listed_newest_first(store):
    store.append_log("info", "process_start", "start", {})
    store.append_log("error", "process_error", "boom", {"error": "x"})
    store.append_log("info", "process_complete", "done", {"count": 2})

    assert [log.operation for log in store.list_logs()] == ["process_complete", "process_error", "process_start"]
    assert [log.details for log in store.list_logs(log_type="error")] == [{"error": "x"}]
    assert len(store.list_logs(limit=1)) == 1


def test_file_backed_store_creates_parent_directory(tmp_path):
    path = tmp_path / "nested" / "digest.db"
    store = RecordStore(str(path))
    store.save_newsletters([_email("a")])
    store.close()

    reopened = RecordStore(str(path))
    assert reopened.existing_message_ids() == {"a"}
    reopened.close()


def test_aggregate_missing_after_insert_raises_lookup_error(store, monkeypatch):
    a = store.save_newsletters([_email("a")])[0]
    now = datetime(2025, 3, 5, tzinfo=timezone.utc)
    monkeypatch.setattr(store, "get_aggregated_summary", lambda aggregated_id: None)
    with pytest.raises(LookupError):
        store.insert_aggregated_summary("digest", now, now, [a.id])
