"""Client for the matching backend.

The controller only needs a handful of operations: paged record fetches,
id-only enumeration, single and batch review actions, and task progress.
``ReviewBackend`` is that contract; ``HttpReviewBackend`` implements it
over the backend's REST API with httpx.
"""

from typing import Any, Protocol

import httpx
from pydantic import ValidationError

from ..config import Settings, get_settings
from ..errors import ActionRejected, TransientFetchError
from ..logging import get_context_logger
from ..models import (
    BatchFailure,
    BatchResult,
    Candidate,
    MatchingTask,
    OriginalLine,
    Priority,
    ProductRef,
    QuerySpec,
    Record,
    RecordPage,
    RecordStatus,
    ReviewAction,
    SelectedMatch,
    TaskProgress,
    TaskStatus,
)
from .retry import RetryConfig, with_retry

logger = get_context_logger(__name__)

# Backend status aliases
_STATUS_ALIASES = {
    "approved": RecordStatus.CONFIRMED,
    "review": RecordStatus.REVIEWING,
}

_PRIORITY_ALIASES = {
    "medium": Priority.NORMAL,
}

TRANSIENT_STATUS_CODES = {408, 429, 500, 502, 503, 504}


class ReviewBackend(Protocol):
    """Operations the review controller consumes."""

    async def fetch_records(self, query: QuerySpec) -> RecordPage: ...

    async def fetch_record_ids(self, query: QuerySpec) -> list[str]: ...

    async def record_action(
        self,
        record_id: str,
        action: ReviewAction,
        product_id: str | None = None,
        note: str | None = None,
    ) -> Record | None: ...

    async def batch_action(
        self,
        record_ids: list[str],
        action: ReviewAction,
        payloads: list[str | None],
    ) -> BatchResult: ...

    async def fetch_tasks(self) -> list[MatchingTask]: ...

    async def task_progress(self, task_id: str) -> MatchingTask: ...

    async def reconcile_task_status(self, task_id: str) -> MatchingTask | None: ...


# =========================
# Payload parsing
# =========================


def parse_product(data: Any) -> ProductRef | None:
    """Parse a product reference, which may be populated or a bare id."""
    if data is None:
        return None
    if isinstance(data, str):
        return ProductRef(id=data)
    product_id = data.get("_id") or data.get("id")
    if not product_id:
        return None
    specifications = data.get("specifications") or {}
    wholesale = data.get("wholesale") or {}
    return ProductRef(
        id=str(product_id),
        name=data.get("name") or "",
        brand=data.get("brand"),
        company=data.get("company"),
        product_code=data.get("productCode"),
        box_code=data.get("boxCode"),
        price=specifications.get("price", wholesale.get("price")),
    )


def parse_candidate(data: dict[str, Any]) -> Candidate | None:
    product = parse_product(data.get("productId") or data.get("product"))
    if product is None:
        return None
    if not product.name and data.get("productName"):
        product = product.model_copy(update={"name": data["productName"]})

    # Prefer the numeric breakdown, then similarity, then the tier label
    score = data.get("score")
    if score is None:
        score = data.get("similarity")
    if score is None:
        score = data.get("confidence")

    return Candidate(product=product, score=score, reason=data.get("reason"))


def parse_record(data: dict[str, Any]) -> Record:
    """Parse a matching record from the backend's JSON shape.

    Raises:
        ValidationError: If required fields are missing or malformed
    """
    original = data.get("originalData") or {}
    raw_status = str(data.get("status") or RecordStatus.PENDING.value)
    raw_priority = str(data.get("priority") or Priority.NORMAL.value)
    try:
        priority = Priority(_PRIORITY_ALIASES.get(raw_priority, raw_priority))
    except ValueError:
        priority = Priority.NORMAL

    selected = data.get("selectedMatch")
    selected_match = None
    if selected:
        selected_match = SelectedMatch(
            product=parse_product(selected.get("productId") or selected.get("product")),
            confidence=selected.get("confidence", selected.get("score")),
            is_memory_match=bool(selected.get("isMemoryMatch")),
            match_type=selected.get("matchType"),
        )

    candidates = [
        candidate
        for candidate in (parse_candidate(c) for c in data.get("candidates") or [])
        if candidate is not None
    ]

    return Record(
        id=str(data.get("_id") or data.get("id")),
        task_id=data.get("taskId"),
        original=OriginalLine(
            name=original.get("name") or data.get("wholesaleName") or "",
            price=original.get("price", data.get("wholesalePrice")),
            brand=original.get("brand"),
            category=original.get("category"),
            specifications=original.get("specifications"),
        ),
        candidates=candidates,
        selected_match=selected_match,
        status=_STATUS_ALIASES.get(raw_status, raw_status),
        priority=priority,
        exceptions=data.get("exceptions") or [],
        created_at=data.get("createdAt"),
        updated_at=data.get("updatedAt"),
    )


def parse_task(data: dict[str, Any]) -> MatchingTask:
    """Parse a matching task.

    Raises:
        ValidationError: If the progress counters are inconsistent
    """
    progress = data.get("progress") or {}
    return MatchingTask(
        id=str(data.get("_id") or data.get("id")),
        filename=data.get("originalFilename") or data.get("filename") or "",
        status=data.get("status") or TaskStatus.PENDING.value,
        progress=TaskProgress(
            total_items=progress.get("totalItems", 0),
            processed_items=progress.get("processedItems", 0),
            confirmed_items=progress.get("confirmedItems", 0),
            pending_items=progress.get("pendingItems", 0),
        ),
        completion_percentage=data.get("completionPercentage"),
        error=data.get("error"),
        created_at=data.get("createdAt"),
        updated_at=data.get("updatedAt"),
    )


def parse_batch_result(payload: dict[str, Any], record_ids: list[str]) -> BatchResult:
    """Parse a batch response that may or may not carry per-id outcomes."""
    data = payload.get("data") or {}
    if "succeeded" not in data and "failed" not in data:
        # Whole-batch acknowledgement
        return BatchResult(succeeded=list(record_ids))

    failed = []
    for item in data.get("failed") or []:
        if isinstance(item, dict):
            failed.append(
                BatchFailure(
                    id=str(item.get("id") or item.get("_id")),
                    reason=str(item.get("reason") or item.get("error") or "rejected"),
                )
            )
        else:
            failed.append(BatchFailure(id=str(item), reason="rejected"))

    return BatchResult(
        succeeded=[str(record_id) for record_id in data.get("succeeded") or []],
        failed=failed,
    )


def _parse_many(items: list[dict[str, Any]], parser, kind: str) -> list:
    parsed = []
    for item in items:
        try:
            parsed.append(parser(item))
        except ValidationError as e:
            logger.warning(
                f"Skipping malformed {kind} {item.get('_id') or item.get('id')}: "
                f"{e.error_count()} validation errors"
            )
    return parsed


# =========================
# HTTP client
# =========================


class HttpReviewBackend:
    """REST client for the matching backend."""

    def __init__(
        self,
        settings: Settings | None = None,
        http_client: httpx.AsyncClient | None = None,
        retry: RetryConfig | None = None,
    ):
        self._settings = settings or get_settings()
        self._http_client = http_client
        self._retry = retry or RetryConfig()

    @property
    def http_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            headers = {"Content-Type": "application/json"}
            if self._settings.api_token:
                headers["Authorization"] = f"Bearer {self._settings.api_token}"
            self._http_client = httpx.AsyncClient(
                base_url=self._settings.api_root,
                timeout=httpx.Timeout(self._settings.request_timeout),
                headers=headers,
                follow_redirects=True,
            )
        return self._http_client

    async def close(self) -> None:
        """Close HTTP client."""
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    async def __aenter__(self) -> "HttpReviewBackend":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
        record_id: str | None = None,
    ) -> dict[str, Any]:
        """Send one request and map failures onto the error taxonomy.

        Raises:
            TransientFetchError: On transport errors, timeouts, 5xx and 429
            ActionRejected: On other 4xx or an explicit ``success: false``
        """
        try:
            response = await self.http_client.request(method, path, params=params, json=json)
        except httpx.TimeoutException as e:
            raise TransientFetchError(f"{method} {path} timed out") from e
        except httpx.TransportError as e:
            raise TransientFetchError(f"{method} {path} failed: {e}") from e

        status = response.status_code
        if status in TRANSIENT_STATUS_CODES or status >= 500:
            raise TransientFetchError(f"{method} {path} returned {status}", status_code=status)

        try:
            payload = response.json()
        except ValueError as e:
            if status >= 400:
                raise ActionRejected(
                    f"{method} {path} returned {status}",
                    record_id=record_id,
                    status_code=status,
                ) from e
            raise TransientFetchError(f"{method} {path} returned malformed JSON") from e

        if not isinstance(payload, dict):
            raise TransientFetchError(f"{method} {path} returned an unexpected payload")

        if status >= 400 or payload.get("success") is False:
            message = payload.get("message") or payload.get("error") or f"HTTP {status}"
            raise ActionRejected(str(message), record_id=record_id, status_code=status)

        return payload

    async def _get(self, path: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        return await with_retry(
            lambda: self._request("GET", path, params=params),
            config=self._retry,
            logger=logger,
        )

    # =========================
    # Records
    # =========================

    async def fetch_records(self, query: QuerySpec) -> RecordPage:
        payload = await self._get("/matching/records", params=query.to_params())
        data = payload.get("data") or {}
        records = _parse_many(data.get("records") or [], parse_record, "record")
        pagination = payload.get("pagination") or {}
        total = data.get("total", pagination.get("total", len(records)))
        return RecordPage(records=records, total_count=int(total))

    async def fetch_record_ids(self, query: QuerySpec) -> list[str]:
        payload = await self._get(
            "/matching/records/ids", params=query.to_params(include_page=False)
        )
        data = payload.get("data") or {}
        return [str(record_id) for record_id in data.get("ids") or []]

    async def record_action(
        self,
        record_id: str,
        action: ReviewAction,
        product_id: str | None = None,
        note: str | None = None,
    ) -> Record | None:
        if action == ReviewAction.LEARN:
            path = f"/matching/records/{record_id}/learn"
            body: dict[str, Any] = {"note": note}
        else:
            path = f"/matching/records/{record_id}/review"
            body = {"action": action.value, "productId": product_id, "note": note}

        payload = await self._request("POST", path, json=body, record_id=record_id)
        data = payload.get("data") or {}
        record = data.get("record")
        if not record:
            return None
        try:
            return parse_record(record)
        except ValidationError:
            logger.warning(f"Action on {record_id} returned a malformed record")
            return None

    async def batch_action(
        self,
        record_ids: list[str],
        action: ReviewAction,
        payloads: list[str | None],
    ) -> BatchResult:
        if action == ReviewAction.LEARN:
            path = "/matching/records/batch-learn"
            body: dict[str, Any] = {"recordIds": record_ids}
        else:
            path = "/matching/records/batch-review"
            body = {"recordIds": record_ids, "action": action.value}
            if any(payload is not None for payload in payloads):
                body["productIds"] = payloads

        payload = await self._request("POST", path, json=body)
        return parse_batch_result(payload, record_ids)

    # =========================
    # Tasks
    # =========================

    async def fetch_tasks(self) -> list[MatchingTask]:
        payload = await self._get("/matching/tasks", params={"limit": 1000})
        data = payload.get("data") or {}
        return _parse_many(data.get("tasks") or [], parse_task, "task")

    async def task_progress(self, task_id: str) -> MatchingTask:
        payload = await self._get(f"/matching/tasks/{task_id}")
        data = payload.get("data") or {}
        try:
            return parse_task(data.get("task") or data)
        except ValidationError as e:
            raise TransientFetchError(f"Task {task_id} returned invalid progress") from e

    async def reconcile_task_status(self, task_id: str) -> MatchingTask | None:
        payload = await self._request(
            "PATCH", f"/matching/tasks/{task_id}/status", record_id=task_id
        )
        data = payload.get("data") or {}
        task = data.get("task")
        if not task:
            return None
        try:
            return parse_task(task)
        except ValidationError:
            return None
