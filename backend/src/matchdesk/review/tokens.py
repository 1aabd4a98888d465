"""Generation tokens for sequencing async responses against staleness."""

import itertools

from ..errors import StaleResponseDiscarded
from ..logging import log_stale_response


class GenerationTracker:
    """Issues monotonically increasing tokens per request kind.

    A response is applied only if its token is still the latest one issued
    for its kind. ``invalidate_all`` makes every outstanding token stale.
    """

    def __init__(self):
        self._counter = itertools.count(1)
        self._latest: dict[str, int] = {}
        self._floor = 0

    def issue(self, kind: str) -> int:
        token = next(self._counter)
        self._latest[kind] = token
        return token

    def latest(self, kind: str) -> int:
        return self._latest.get(kind, 0)

    def is_current(self, kind: str, token: int) -> bool:
        return token > self._floor and self._latest.get(kind) == token

    def check(self, kind: str, token: int) -> None:
        """Raise StaleResponseDiscarded unless ``token`` is current."""
        if not self.is_current(kind, token):
            latest = max(self.latest(kind), self._floor)
            log_stale_response(kind, token, latest)
            raise StaleResponseDiscarded(kind, token, latest)

    def invalidate(self, kind: str) -> None:
        self._latest[kind] = next(self._counter)

    def invalidate_all(self) -> None:
        self._floor = next(self._counter)
        self._latest.clear()
