"""Unit tests for generation token sequencing."""

import pytest

from matchdesk.errors import StaleResponseDiscarded
from matchdesk.review.tokens import GenerationTracker


class TestGenerationTracker:
    def test_latest_token_is_current(self):
        tracker = GenerationTracker()
        token = tracker.issue("page")
        assert tracker.is_current("page", token)

    def test_newer_token_supersedes_older(self):
        tracker = GenerationTracker()
        old = tracker.issue("search")
        new = tracker.issue("search")

        assert not tracker.is_current("search", old)
        assert tracker.is_current("search", new)
        with pytest.raises(StaleResponseDiscarded) as exc_info:
            tracker.check("search", old)
        assert exc_info.value.latest == new

    def test_kinds_are_independent(self):
        tracker = GenerationTracker()
        page = tracker.issue("page")
        tracker.issue("ids")
        assert tracker.is_current("page", page)

    def test_invalidate_kind(self):
        tracker = GenerationTracker()
        token = tracker.issue("ids")
        tracker.invalidate("ids")
        assert not tracker.is_current("ids", token)

    def test_invalidate_all_makes_every_token_stale(self):
        tracker = GenerationTracker()
        tokens = {kind: tracker.issue(kind) for kind in ("page", "search", "ids")}
        tracker.invalidate_all()

        for kind, token in tokens.items():
            assert not tracker.is_current(kind, token)
        assert tracker.is_current("page", tracker.issue("page"))
