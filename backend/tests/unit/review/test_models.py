"""Unit tests for review queue models."""

from datetime import timezone

import pytest
from pydantic import ValidationError

from factories import make_record, make_task
from matchdesk.models import (
    BatchResult,
    Candidate,
    Notification,
    NotificationLevel,
    PageView,
    ProductRef,
    QuerySpec,
    RecordStatus,
    SortKey,
    StatusFilter,
    TaskProgress,
    TaskStatus,
)


class TestQuerySpec:
    """Tests for query derivation and the page reset rule."""

    def test_is_immutable(self):
        query = QuerySpec()
        with pytest.raises(ValidationError):
            query.page = 3

    def test_page_change_keeps_filters(self):
        query = QuerySpec(search_term="cola", status_filter=StatusFilter.PENDING)
        paged = query.with_changes(page=4)

        assert paged.page == 4
        assert paged.search_term == "cola"
        assert paged.status_filter == StatusFilter.PENDING

    @pytest.mark.parametrize(
        "changes",
        [
            {"search_term": "tea"},
            {"status_filter": StatusFilter.CONFIRMED},
            {"sort_key": SortKey.PRICE_ASC},
            {"page_size": 50},
            {"task_id": "task-2"},
        ],
    )
    def test_filter_change_resets_page(self, changes):
        query = QuerySpec(page=5)
        assert query.with_changes(**changes).page == 1

    def test_filter_change_wins_over_explicit_page(self):
        query = QuerySpec(page=2)
        assert query.with_changes(search_term="x", page=7).page == 1

    def test_unchanged_filter_value_keeps_page(self):
        query = QuerySpec(search_term="cola", page=3)
        assert query.with_changes(search_term="cola").page == 3

    def test_unknown_field_rejected(self):
        with pytest.raises(ValueError):
            QuerySpec().with_changes(colour="red")

    def test_filter_key_ignores_pagination(self):
        a = QuerySpec(search_term="x", page=1, page_size=20)
        b = QuerySpec(search_term="x", page=9, page_size=50)
        assert a.filter_key() == b.filter_key()

    def test_to_params(self):
        query = QuerySpec(
            task_id="t1",
            search_term="cola",
            status_filter=StatusFilter.UNCONFIRMED,
            sort_key=SortKey.CONFIDENCE_DESC,
            page=2,
            page_size=25,
        )
        assert query.to_params() == {
            "taskId": "t1",
            "search": "cola",
            "status": "unconfirmed",
            "sortBy": "confidence_desc",
            "page": 2,
            "limit": 25,
        }
        assert "page" not in query.to_params(include_page=False)


class TestRecord:
    """Tests for record derived properties."""

    def test_candidates_ranked_by_normalized_score(self):
        candidates = [
            Candidate(product=ProductRef(id="a"), score="low"),
            Candidate(product=ProductRef(id="b"), score=91),
            Candidate(product=ProductRef(id="c"), score={"total": 70}),
        ]
        record = make_record("r1", candidates=candidates, selected=False)
        assert [c.product.id for c in record.candidates] == ["b", "c", "a"]

    def test_equal_candidate_scores_keep_delivery_order(self):
        candidates = [
            Candidate(product=ProductRef(id="first"), score=80),
            Candidate(product=ProductRef(id="second"), score="80"),
        ]
        record = make_record("r1", candidates=candidates, selected=False)
        assert [c.product.id for c in record.candidates] == ["first", "second"]

    def test_confidence_prefers_selected_match(self):
        record = make_record("r1", score=91)
        assert record.confidence == 91.0

    def test_confidence_falls_back_to_top_candidate(self):
        record = make_record("r1", score="medium", selected=False)
        assert record.confidence == 70.0

    def test_confidence_zero_without_scores(self):
        record = make_record("r1", selected=False, candidates=[])
        assert record.best_candidate_score is None
        assert record.confidence == 0.0

    def test_open_statuses(self):
        assert make_record("a", status=RecordStatus.PENDING).is_open
        assert make_record("b", status=RecordStatus.EXCEPTION).is_open
        assert not make_record("c", status=RecordStatus.CONFIRMED).is_open
        assert not make_record("d", status=RecordStatus.REVIEWING).is_open

    def test_search_fields_include_selected_product(self):
        record = make_record("r1", name="Cola", product_name="Coca-Cola Zero")
        fields = record.search_fields()
        assert "Cola" in fields
        assert "Coca-Cola Zero" in fields
        assert "PC-r1" in fields


class TestMatchingTask:
    """Tests for task progress and stuck detection."""

    def test_processed_cannot_exceed_total(self):
        with pytest.raises(ValidationError):
            TaskProgress(total_items=3, processed_items=4)

    def test_stuck_when_all_items_processed_but_still_processing(self):
        assert make_task("t1", total=5, processed=5).is_stuck

    def test_not_stuck_when_status_moved_on(self):
        assert not make_task("t1", status=TaskStatus.REVIEW, total=5, processed=5).is_stuck

    def test_not_stuck_with_zero_items(self):
        assert not make_task("t1", total=0, processed=0).is_stuck

    def test_percent_complete_derived_from_progress(self):
        assert make_task("t1", total=8, processed=2).percent_complete == 25.0

    def test_signature_tracks_progress(self):
        a = make_task("t1", total=10, processed=3)
        b = make_task("t1", total=10, processed=4)
        assert a.signature != b.signature
        assert a.signature == make_task("t1", total=10, processed=3).signature


class TestPageViewAndBatchResult:
    def test_empty_result_has_zero_pages(self):
        view = PageView.create([], page=1, page_size=20)
        assert view.total_pages == 0
        assert view.items == []

    def test_total_pages_is_ceiling(self):
        records = [make_record(f"r{i}") for i in range(5)]
        assert PageView.create(records, page=1, page_size=2).total_pages == 3

    def test_batch_result_accounting(self):
        result = BatchResult(succeeded=["a"])
        result.fail("b", "locked")
        assert result.submitted == 2
        assert result.failed_ids == ["b"]
        assert not result.all_succeeded


class TestNotification:
    def test_created_at_is_timezone_aware(self):
        notification = Notification(level=NotificationLevel.INFO, title="Saved", message="ok")
        assert notification.created_at.tzinfo is timezone.utc
