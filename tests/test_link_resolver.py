from __future__ import annotations

import threading
import time
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import httpx
import pytest

from newsletter_digest.link_resolver import LinkResolver
from newsletter_digest.models import ExtractedLink
from newsletter_digest.operation_log import OperationLog

TRACKED = "https://link.mail.beehiiv.com/ss/c/abc"
DESTINATION = "https://example.com/article?id=1"


def _redirecting_transport() -> httpx.MockTransport:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.method == "HEAD"
        if request.url.host == "link.mail.beehiiv.com":
            return httpx.Response(302, headers={"Location": DESTINATION})
        return httpx.Response(200)

    return httpx.MockTransport(handler)


def test_resolve_follows_redirects():
    resolver = LinkResolver(transport=_redirecting_transport())
    result = resolver.resolve(TRACKED, 10_000)
    assert result.status == "resolved"
    assert result.final_url == DESTINATION


def test_non_2xx_destination_still_counts_as_resolved():
    transport = httpx.MockTransport(lambda request: httpx.Response(404))
    result = LinkResolver(transport=transport).resolve(DESTINATION, 10_000)
    assert result.status == "resolved"
    assert result.final_url == DESTINATION


def test_timeout_yields_failed_result(store):
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    resolver = LinkResolver(OperationLog(store), transport=httpx.MockTransport(handler))
    result = resolver.resolve(TRACKED, 1)
    assert result.final_url is None
    assert result.status == "failed"

    logs = store.list_logs(log_type="warning")
    assert logs[0].operation == "link_resolve"
    assert logs[0].details["url"] == TRACKED
    assert logs[0].details["kind"] == "resolution"


def test_redirect_loop_yields_failed_result():
    transport = httpx.MockTransport(lambda request: httpx.Response(302, headers={"Location": str(request.url)}))
    result = LinkResolver(transport=transport).resolve(TRACKED, 10_000)
    assert (result.final_url, result.status) == (None, "failed")


@pytest.mark.parametrize("url", ["", "not a url", "ftp://example.com/file", "https://[invalid"])
def test_malformed_urls_never_raise(url):
    result = LinkResolver().resolve(url, 10_000)
    assert (result.final_url, result.status) == (None, "failed")


def test_unexpected_transport_error_never_raises():
    def handler(request: httpx.Request) -> httpx.Response:
        raise RuntimeError("boom")

    result = LinkResolver(transport=httpx.MockTransport(handler)).resolve(TRACKED, 10_000)
    assert (result.final_url, result.status) == (None, "failed")
    assert result.error == "boom"


class _SlowHandler(BaseHTTPRequestHandler):
    def do_HEAD(self):  # noqa: N802
        time.sleep(0.5)
        self.send_response(200)
        self.end_headers()

    def log_message(self, format, *args):  # noqa: A002
        pass


@pytest.fixture
def slow_server():
    server = ThreadingHTTPServer(("127.0.0.1", 0), _SlowHandler)
    server.daemon_threads = True
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield f"http://127.0.0.1:{server.server_address[1]}/slow"
    server.shutdown()
    server.server_close()


def test_one_millisecond_timeout_against_slow_endpoint(slow_server):
    result = LinkResolver().resolve(slow_server, 1)
    assert (result.final_url, result.status) == (None, "failed")


def test_resolve_links_preserves_order_with_workers():
    links = [ExtractedLink(newsletter_id=1, tracked_url=f"{TRACKED}/{i}", associated_text=f"story {i}") for i in range(6)]

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "link.mail.beehiiv.com":
            idx = request.url.path.rsplit("/", 1)[-1]
            time.sleep(0.01 * (6 - int(idx)))
            return httpx.Response(302, headers={"Location": f"https://example.com/{idx}"})
        return httpx.Response(200)

    resolver = LinkResolver(transport=httpx.MockTransport(handler), max_workers=3)
    resolved = resolver.resolve_links(links, 10_000)
    assert [r.final_url for r in resolved] == [f"https://example.com/{i}" for i in range(6)]
    assert [r.associated_text for r in resolved] == [f"story {i}" for i in range(6)]
    assert all(r.resolution_status == "resolved" for r in resolved)


def test_rejects_non_positive_worker_count():
    with pytest.raises(ValueError):
        LinkResolver(max_workers=0)
