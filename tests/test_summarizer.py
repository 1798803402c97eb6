from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, List

import pytest

from newsletter_digest.config import RuntimeConfig
from newsletter_digest.errors import AggregationError, SummarizationError
from newsletter_digest.models import RawEmail, ResolvedLink
from newsletter_digest.summarizer import RateLimiter, Summarizer


class FakeOpenAI:
    def __init__(self, content: Any = "## Summary\n\n- item"):
        self.content = content
        self.calls: List[dict] = []
        self.chat = self.Chat(self)

    class Chat:
        def __init__(self, outer: "FakeOpenAI"):
            self.completions = outer.Completions(outer)

    class Completions:
        def __init__(self, outer: "FakeOpenAI"):
            self._outer = outer

        def create(self, model, messages, temperature):
            self._outer.calls.append({"model": model, "messages": messages, "temperature": temperature})
            content = self._outer.content

            class Choice:
                def __init__(self):
                    self.message = type("msg", (), {"content": content})

            class Response:
                def __init__(self):
                    self.choices = [Choice()]

            return Response()


class FailingOpenAI(FakeOpenAI):
    def __init__(self, exc: Exception):
        super().__init__()
        self.chat = self.Chat(self)
        self.exc = exc

    class Completions(FakeOpenAI.Completions):
        def create(self, model, messages, temperature):
            raise self._outer.exc


def _newsletter(store, message_id: str = "m1"):
    email = RawEmail(
        gmail_message_id=message_id,
        subject="AI Weekly",
        sender="news@example.com",
        received_at=datetime(2025, 3, 1, tzinfo=timezone.utc),
        html_content="<p>body</p>",
    )
    return store.save_newsletters([email])[0]


def _summarizer(store, client, sleeps: List[float]) -> Summarizer:
    config = RuntimeConfig(store)
    return Summarizer(
        store,
        config,
        client=client,
        model="test-model",
        rate_limiter=RateLimiter(config, sleep=sleeps.append),
    )


def _links(newsletter_id: int) -> List[ResolvedLink]:
    return [
        ResolvedLink(newsletter_id, "https://link.mail.beehiiv.com/a", "https://example.com/a", "Model launch", "resolved"),
        ResolvedLink(newsletter_id, "https://link.mail.beehiiv.com/b", None, "Funding round", "failed"),
    ]


def test_summarize_persists_summary_and_completes_newsletter(store):
    newsletter = _newsletter(store)
    client = FakeOpenAI()
    summarizer = _summarizer(store, client, [])

    summary = summarizer.summarize(newsletter.id, "<p>" + "x" * 20_000, _links(newsletter.id))

    assert summary.markdown_content == "## Summary\n\n- item"
    assert store.get_newsletter(newsletter.id).processed_status == "completed"
    assert store.summary_for_newsletter(newsletter.id).id == summary.id

    call = client.calls[0]
    assert call["model"] == "test-model"
    assert call["temperature"] == 0.3
    user_prompt = call["messages"][1]["content"]
    assert "Link 1: [Model launch](https://example.com/a)" in user_prompt
    assert "Link 2: [Funding round](https://link.mail.beehiiv.com/b)" in user_prompt
    assert "<p>" + "x" * 14_997 in user_prompt
    assert "x" * 14_998 not in user_prompt


def test_waits_default_spacing_before_each_call(store):
    newsletter = _newsletter(store)
    sleeps: List[float] = []
    _summarizer(store, FakeOpenAI(), sleeps).summarize(newsletter.id, "<p>a</p>", [])
    assert sleeps == [1.0]


def test_spacing_is_reread_for_every_call(store):
    first = _newsletter(store, "m1")
    second = _newsletter(store, "m2")
    sleeps: List[float] = []
    summarizer = _summarizer(store, FakeOpenAI(), sleeps)

    store.set_config("ollama_rate_limit_ms", 250)
    summarizer.summarize(first.id, "<p>a</p>", [])
    store.set_config("ollama_rate_limit_ms", 0)
    summarizer.summarize(second.id, "<p>b</p>", [])

    assert sleeps == [0.25]


def test_failure_marks_newsletter_failed_and_reraises(store):
    newsletter = _newsletter(store)
    summarizer = _summarizer(store, FailingOpenAI(RuntimeError("upstream down")), [])

    with pytest.raises(SummarizationError) as excinfo:
        summarizer.summarize(newsletter.id, "<p>a</p>", [])

    assert excinfo.value.reason == "api"
    assert store.get_newsletter(newsletter.id).processed_status == "failed"
    assert store.summary_for_newsletter(newsletter.id) is None
    errors = store.list_logs(log_type="error")
    assert errors[0].operation == "ai_summarize"
    assert errors[0].details["newsletter_id"] == newsletter.id


def test_empty_completion_is_a_failure(store):
    newsletter = _newsletter(store)
    summarizer = _summarizer(store, FakeOpenAI(content="  "), [])

    with pytest.raises(SummarizationError) as excinfo:
        summarizer.summarize(newsletter.id, "<p>a</p>", [])

    assert excinfo.value.reason == "empty_response"
    assert store.get_newsletter(newsletter.id).processed_status == "failed"


def test_retry_once_on_503_waits_again(store):
    class E(Exception):
        def __init__(self):
            self.status_code = 503

    class FlakyOpenAI(FakeOpenAI):
        def __init__(self):
            super().__init__()
            self.attempts = 0
            self.chat = self.Chat(self)

        class Completions(FakeOpenAI.Completions):
            def create(self, model, messages, temperature):
                self._outer.attempts += 1
                if self._outer.attempts == 1:
                    raise E()
                return super().create(model, messages, temperature)

    newsletter = _newsletter(store)
    sleeps: List[float] = []
    summary = _summarizer(store, FlakyOpenAI(), sleeps).summarize(newsletter.id, "<p>a</p>", [])
    assert summary.markdown_content
    assert sleeps == [1.0, 1.0]


def test_aggregate_persists_aggregate_and_join_rows(store):
    first = _newsletter(store, "m1")
    second = _newsletter(store, "m2")
    now = datetime.now(timezone.utc)
    s1 = store.insert_summary(first.id, "First summary", 10, created_at=now - timedelta(hours=1))
    s2 = store.insert_summary(second.id, "Second summary", 10, created_at=now)
    client = FakeOpenAI(content="# Merged")
    sleeps: List[float] = []

    aggregated = _summarizer(store, client, sleeps).aggregate([s1.id, s2.id], s1.created_at, s2.created_at)

    assert aggregated.markdown_content == "# Merged"
    assert aggregated.newsletter_count == 2
    assert aggregated.date_range_start == s1.created_at
    assert aggregated.date_range_end == s2.created_at
    assert sorted(store.aggregated_newsletter_ids(aggregated.id)) == [first.id, second.id]
    prompt = client.calls[0]["messages"][1]["content"]
    assert "## Newsletter 1\n\nFirst summary" in prompt
    assert "\n\n---\n\n## Newsletter 2\n\nSecond summary" in prompt
    assert sleeps == [1.0]


def test_aggregate_without_summaries_raises(store):
    summarizer = _summarizer(store, FakeOpenAI(), [])
    now = datetime.now(timezone.utc)
    with pytest.raises(AggregationError):
        summarizer.aggregate([999], now, now)
    assert store.list_aggregated_summaries() == []


def test_aggregate_wraps_llm_failures(store):
    newsletter = _newsletter(store)
    summary = store.insert_summary(newsletter.id, "Only summary", 5)
    summarizer = _summarizer(store, FailingOpenAI(RuntimeError("nope")), [])
    with pytest.raises(AggregationError) as excinfo:
        summarizer.aggregate([summary.id], summary.created_at, summary.created_at)
    assert excinfo.value.details["reason"] == "api"
