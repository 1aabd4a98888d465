"""Error taxonomy for the review queue controller."""


class MatchDeskError(Exception):
    """Base class for all controller errors."""


class TransientFetchError(MatchDeskError):
    """A fetch failed for a reason that may succeed on retry.

    Network failures, timeouts, 5xx and rate limiting all map here.
    Callers keep their previous state and retry on the next tick.
    """

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class ActionRejected(MatchDeskError):
    """The backend refused a single action or a whole batch."""

    def __init__(
        self,
        message: str,
        record_id: str | None = None,
        status_code: int | None = None,
    ):
        super().__init__(message)
        self.record_id = record_id
        self.status_code = status_code


class ResolutionError(MatchDeskError):
    """No action target could be resolved for a record."""

    def __init__(self, record_id: str, reason: str):
        super().__init__(f"{record_id}: {reason}")
        self.record_id = record_id
        self.reason = reason


class StaleResponseDiscarded(MatchDeskError):
    """A response arrived after a newer request of the same kind was issued."""

    def __init__(self, kind: str, token: int, latest: int):
        super().__init__(f"stale {kind} response (token {token}, latest {latest})")
        self.kind = kind
        self.token = token
        self.latest = latest
