from __future__ import annotations

import asyncio
import hashlib
import hmac
import re
import secrets
from dataclasses import dataclass, replace
from datetime import datetime
from typing import TYPE_CHECKING, Optional

from leasekeeper.logging import get_logger
from leasekeeper.service.audit import AuditSink, deliver
from leasekeeper.service.clock import Clock, utcnow
from leasekeeper.service.devices import (
    normalize_source_address,
    resolve_device_label,
    truncate_user_agent,
)
from leasekeeper.service.errors import ValidationError
from leasekeeper.service.preferences import PreferenceService
from leasekeeper.service.singleflight import SingleFlight
from leasekeeper.storage.errors import ConstraintViolation
from leasekeeper.storage.models import AUDIT_CREATE, AuditEvent, Lease

if TYPE_CHECKING:
    from leasekeeper.config import Settings
    from leasekeeper.storage.memory import MemoryStore
    from leasekeeper.storage.postgres import PostgresStore

logger = get_logger(__name__)

TOKEN_BYTES = 32
# token_urlsafe(32) yields 43 characters of the URL-safe base64 alphabet
_TOKEN_RE = re.compile(r"^[A-Za-z0-9_-]{43}$")
MAX_OWNER_ID_LENGTH = 255


def generate_secret() -> str:
    return secrets.token_urlsafe(TOKEN_BYTES)


def hash_token(secret: str, pepper: Optional[str] = None) -> str:
    """One-way hash stored in place of the bearer secret."""
    if pepper:
        return hmac.new(pepper.encode("utf-8"), secret.encode("utf-8"), hashlib.sha256).hexdigest()
    return hashlib.sha256(secret.encode("utf-8")).hexdigest()


def is_well_formed(secret: Optional[str]) -> bool:
    return bool(secret) and bool(_TOKEN_RE.match(secret))


@dataclass
class IssuedLease:
    lease_id: str
    owner_id: str
    token: str
    created_at: datetime
    hard_expiry_at: datetime
    idle_timeout_minutes: int
    shared: bool = False


class TokenIssuer:
    """Creates leases after a successful authentication.

    The bearer secret is returned exactly once; only its hash is stored.
    Creation is single-flight per owner: concurrent issue calls for the
    same principal share one lease instead of racing to create several.
    """

    def __init__(
        self,
        store: "PostgresStore | MemoryStore",
        settings: "Settings",
        preferences: PreferenceService,
        *,
        audit: Optional[AuditSink] = None,
        clock: Clock = utcnow,
    ) -> None:
        self.store = store
        self.preferences = preferences
        self.audit = audit
        self.max_duration_minutes = settings.lease_max_duration_minutes
        self.pepper = settings.token_pepper
        self._now = clock
        self._flight: SingleFlight[IssuedLease] = SingleFlight()

    def hash(self, secret: str) -> str:
        return hash_token(secret, self.pepper)

    async def issue(
        self,
        owner_id: str,
        *,
        device_label: Optional[str] = None,
        user_agent: Optional[str] = None,
        source_address: Optional[str] = None,
        tenant_id: str = "public",
        role: str = "user",
    ) -> IssuedLease:
        if not owner_id or not owner_id.strip() or len(owner_id) > MAX_OWNER_ID_LENGTH:
            raise ValidationError("owner_id is required", detail={"field": "owner_id"})

        async def create() -> IssuedLease:
            # Off the event loop so concurrent callers can join this flight.
            return await asyncio.to_thread(
                self._create,
                owner_id,
                device_label=device_label,
                user_agent=user_agent,
                source_address=source_address,
                tenant_id=tenant_id,
                role=role,
            )

        issued, shared = await self._flight.do(owner_id, create)
        if shared:
            logger.info("lease_issue_joined", owner_id=owner_id, lease_id=issued.lease_id)
            return replace(issued, shared=True)
        return issued

    def _create(
        self,
        owner_id: str,
        *,
        device_label: Optional[str],
        user_agent: Optional[str],
        source_address: Optional[str],
        tenant_id: str,
        role: str,
    ) -> IssuedLease:
        address = normalize_source_address(source_address)
        label = resolve_device_label(device_label, user_agent)
        idle_minutes = self.preferences.effective_idle_timeout(owner_id)
        for attempt in (1, 2):
            secret = generate_secret()
            lease = Lease.new(
                owner_id,
                self.hash(secret),
                now=self._now(),
                max_duration_minutes=self.max_duration_minutes,
                device_label=label,
                source_address=address,
                user_agent=truncate_user_agent(user_agent),
                tenant_id=tenant_id or "public",
                role=role or "user",
            )
            try:
                self.store.create_lease(lease)
            except ConstraintViolation:
                if attempt == 2:
                    raise
                logger.warning("lease_token_collision", owner_id=owner_id)
                continue
            break

        logger.info(
            "lease_issued",
            lease_id=lease.id,
            owner_id=owner_id,
            token_hash=lease.token_hash,
            hard_expiry_at=lease.hard_expiry_at.isoformat(),
        )
        deliver(
            self.audit,
            AuditEvent(
                kind=AUDIT_CREATE,
                occurred_at=lease.created_at,
                lease_id=lease.id,
                owner_id=owner_id,
                source_address=address,
                detail={"device_label": label, "tenant_id": lease.tenant_id},
            ),
        )
        return IssuedLease(
            lease_id=lease.id,
            owner_id=owner_id,
            token=secret,
            created_at=lease.created_at,
            hard_expiry_at=lease.hard_expiry_at,
            idle_timeout_minutes=idle_minutes,
        )
