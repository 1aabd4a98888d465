"""Pytest fixtures for review queue unit tests."""

import pytest

from factories import FakeBackend, make_record
from matchdesk.config import Settings
from matchdesk.models import Record, RecordStatus


@pytest.fixture
def settings() -> Settings:
    """Settings with intervals short enough for unit tests."""
    return Settings(
        poll_interval=0.01,
        stuck_reconcile_delay=0,
        search_debounce=0.01,
        batch_chunk_size=100,
        batch_chunk_pause=0,
        page_size=2,
    )


@pytest.fixture
def sample_records() -> list[Record]:
    """Six records across statuses, scores and match sources."""
    return [
        make_record("r1", name="Cola 330ml", score=95, price=1.5, minutes=1),
        make_record("r2", name="Lemonade 1L", score=72, price=2.0, minutes=2, memory=True),
        make_record("r3", name="Water 500ml", status=RecordStatus.CONFIRMED, score=88, price=0.8, minutes=3),
        make_record("r4", name="Iced Tea", score="low", price=1.2, minutes=4),
        make_record("r5", name="Orange Juice", status=RecordStatus.EXCEPTION, score=93, price=3.1, minutes=5),
        make_record("r6", name="Ginger Ale", status=RecordStatus.REJECTED, score={"total": 64.6}, minutes=6),
    ]


@pytest.fixture
def fake_backend(sample_records) -> FakeBackend:
    return FakeBackend(records=sample_records)
