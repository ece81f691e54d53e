# url_service/repository.py

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Optional

logger = logging.getLogger(__name__)


@dataclass
class UrlRecord:
    url_code: str
    original_url: str
    short_url: str
    owner_id: Optional[str] = None
    owner_email: Optional[str] = None
    owner_role: str = "user"
    clicks: int = 0
    expires_at: Optional[datetime] = None
    is_active: bool = True
    deleted_by: Optional[str] = None
    deleted_at: Optional[datetime] = None


class UrlRepository(ABC):
    """Storage contract the URL service's event consumers depend on."""

    @abstractmethod
    def add(self, record: UrlRecord) -> UrlRecord:
        pass

    @abstractmethod
    def get(self, url_code: str) -> Optional[UrlRecord]:
        pass

    @abstractmethod
    def deactivate_by_owner(self, owner_id: str, deleted_by: str) -> int:
        """
        Soft-deletes every active URL of an owner.
        Returns how many URLs changed state, so a repeated call returns 0.
        """
        pass

    @abstractmethod
    def set_owner_role(self, owner_id: str, role: str) -> int:
        pass


class InMemoryUrlRepository(UrlRepository):
    def __init__(self):
        self._records: Dict[str, UrlRecord] = {}

    def add(self, record: UrlRecord) -> UrlRecord:
        if record.url_code in self._records:
            raise ValueError(f"Short code '{record.url_code}' already in use")
        self._records[record.url_code] = record
        return record

    def get(self, url_code: str) -> Optional[UrlRecord]:
        return self._records.get(url_code)

    def deactivate_by_owner(self, owner_id: str, deleted_by: str) -> int:
        now = datetime.now(timezone.utc)
        changed = 0
        for record in self._records.values():
            if record.owner_id == owner_id and record.is_active:
                record.is_active = False
                record.deleted_by = deleted_by
                record.deleted_at = now
                changed += 1
        return changed

    def set_owner_role(self, owner_id: str, role: str) -> int:
        changed = 0
        for record in self._records.values():
            if record.owner_id == owner_id and record.owner_role != role:
                record.owner_role = role
                changed += 1
        return changed
