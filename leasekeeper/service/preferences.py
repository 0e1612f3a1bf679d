from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, List, Optional

from leasekeeper.logging import get_logger
from leasekeeper.service.clock import Clock, utcnow
from leasekeeper.service.errors import PreferenceOutOfRange
from leasekeeper.storage.common import clamp_idle_minutes

if TYPE_CHECKING:
    from leasekeeper.config import Settings
    from leasekeeper.storage.memory import MemoryStore
    from leasekeeper.storage.postgres import PostgresStore

logger = get_logger(__name__)


@dataclass
class IdleTimeoutSetting:
    idle_timeout_minutes: int
    minimum: int
    maximum: int
    default: int
    is_default: bool
    options: List[int] = field(default_factory=list)
    updated_at: Optional[datetime] = None


class PreferenceService:
    """Per-principal idle-timeout preference.

    Reads never create rows: a principal without a stored preference gets
    the configured default. Writes are validated against the configured
    range and rejected, not clamped, when they fall outside it.
    """

    def __init__(
        self,
        store: "PostgresStore | MemoryStore",
        settings: "Settings",
        *,
        clock: Clock = utcnow,
    ) -> None:
        self.store = store
        self.minimum = settings.idle_timeout_min_minutes
        self.maximum = settings.idle_timeout_max_minutes
        self.default = settings.idle_timeout_default_minutes
        self.options = settings.idle_timeout_options
        self._now = clock

    def _describe(
        self, minutes: int, *, is_default: bool, updated_at: Optional[datetime] = None
    ) -> IdleTimeoutSetting:
        return IdleTimeoutSetting(
            idle_timeout_minutes=minutes,
            minimum=self.minimum,
            maximum=self.maximum,
            default=self.default,
            is_default=is_default,
            options=list(self.options),
            updated_at=updated_at,
        )

    def clamp(self, value: Optional[int]) -> int:
        return clamp_idle_minutes(
            value, default=self.default, minimum=self.minimum, maximum=self.maximum
        )

    def effective_idle_timeout(self, owner_id: str) -> int:
        """Idle window in minutes used when validating the owner's leases."""
        pref = self.store.get_idle_preference(owner_id)
        return self.clamp(pref.idle_timeout_minutes if pref else None)

    def get(self, owner_id: str) -> IdleTimeoutSetting:
        pref = self.store.get_idle_preference(owner_id)
        if pref is None:
            return self._describe(self.default, is_default=True)
        return self._describe(
            self.clamp(pref.idle_timeout_minutes),
            is_default=False,
            updated_at=pref.updated_at,
        )

    def set(self, owner_id: str, idle_timeout_minutes) -> IdleTimeoutSetting:
        # bool is an int subclass; True must not be accepted as 1 minute
        if (
            isinstance(idle_timeout_minutes, bool)
            or not isinstance(idle_timeout_minutes, int)
            or not self.minimum <= idle_timeout_minutes <= self.maximum
        ):
            logger.info(
                "idle_preference_rejected",
                owner_id=owner_id,
                value=idle_timeout_minutes,
            )
            raise PreferenceOutOfRange(idle_timeout_minutes, self.minimum, self.maximum)
        pref = self.store.set_idle_preference(owner_id, idle_timeout_minutes, self._now())
        logger.info(
            "idle_preference_updated",
            owner_id=owner_id,
            idle_timeout_minutes=idle_timeout_minutes,
        )
        return self._describe(
            pref.idle_timeout_minutes, is_default=False, updated_at=pref.updated_at
        )
