# auth_service/engagement.py

import logging
from collections import defaultdict
from typing import Dict, Set

logger = logging.getLogger(__name__)


class EngagementTracker:
    """
    Per-user URL statistics materialized from url_events.

    Click counts are taken from the absolute ``clicks`` value carried by each
    url.clicked event and only ever move up, so a redelivered event cannot
    double count.
    """

    def __init__(self):
        self._urls_by_user: Dict[str, Set[str]] = defaultdict(set)
        self._owner_by_code: Dict[str, str] = {}
        self._clicks_by_code: Dict[str, int] = {}

    def record_created(self, user_id: str, url_code: str):
        if user_id:
            self._urls_by_user[user_id].add(url_code)
            self._owner_by_code[url_code] = user_id
        self._clicks_by_code.setdefault(url_code, 0)

    def record_clicks(self, url_code: str, clicks: int):
        current = self._clicks_by_code.get(url_code, 0)
        if clicks > current:
            self._clicks_by_code[url_code] = clicks

    def record_deleted(self, url_code: str):
        owner = self._owner_by_code.pop(url_code, None)
        if owner is not None:
            self._urls_by_user[owner].discard(url_code)
        self._clicks_by_code.pop(url_code, None)

    def url_count(self, user_id: str) -> int:
        return len(self._urls_by_user.get(user_id, ()))

    def clicks(self, url_code: str) -> int:
        return self._clicks_by_code.get(url_code, 0)

    def total_clicks(self, user_id: str) -> int:
        return sum(self._clicks_by_code.get(code, 0) for code in self._urls_by_user.get(user_id, ()))
