from __future__ import annotations

import pytest

from newsletter_digest.store import RecordStore


@pytest.fixture
def store():
    s = RecordStore(":memory:")
    yield s
    s.close()
