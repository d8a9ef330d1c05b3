"""Upload quota checks consulted before any upload is accepted."""

import logging
from datetime import datetime
from typing import Optional

logger = logging.getLogger(__name__)


class TierLimitService:
    """Interface: may this user upload another lab report?"""

    def can_upload_lab(self, user_id: int) -> bool:
        raise NotImplementedError


class YearlyUploadLimit(TierLimitService):
    """
    Allows up to ``max_uploads_per_year`` uploads per calendar year.

    ``None`` means unlimited, ``0`` disables uploads entirely.
    """

    def __init__(self, repository, max_uploads_per_year: Optional[int] = None, clock=datetime.utcnow):
        self.repository = repository
        self.max_uploads_per_year = max_uploads_per_year
        self._clock = clock

    def can_upload_lab(self, user_id: int) -> bool:
        if self.max_uploads_per_year is None:
            return True

        year_start = self._clock().replace(month=1, day=1, hour=0, minute=0, second=0, microsecond=0)
        used = self.repository.count_uploads_since(user_id, year_start)
        allowed = used < self.max_uploads_per_year
        if not allowed:
            logger.info(f"User {user_id} reached upload limit ({used}/{self.max_uploads_per_year})")
        return allowed
