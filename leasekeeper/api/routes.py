from __future__ import annotations

import hmac
from typing import Any, Callable, Optional

from fastapi import APIRouter, Depends, Header, Path, Request

from leasekeeper.api.schemas import (
    ActivityAckResponse,
    ActivityRequest,
    Envelope,
    IdleTimeoutRequest,
    IdleTimeoutResponse,
    IssuedLeaseResponse,
    IssueLeaseRequest,
    LeaseItem,
    LeaseListResponse,
    LeaseStatsResponse,
    LeaseStatusResponse,
    RevokeResponse,
)
from leasekeeper.logging import get_logger
from leasekeeper.service.errors import (
    ForbiddenError,
    LeaseExpired,
    LeaseNotFound,
    LeaseRevoked,
)
from leasekeeper.service.preferences import IdleTimeoutSetting
from leasekeeper.service.retry import call_with_storage_retry
from leasekeeper.service.runtime import Runtime, get_runtime
from leasekeeper.service.validator import LeaseStatus

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _bearer_token(authorization: Optional[str], lease_token: Optional[str]) -> Optional[str]:
    if authorization:
        scheme, _, value = authorization.partition(" ")
        if scheme.lower() == "bearer" and value.strip():
            return value.strip()
        return None
    if lease_token:
        return lease_token.strip() or None
    return None


def _client_source(request: Request, runtime: Runtime) -> Optional[str]:
    if runtime.settings.trust_proxy_headers:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            first_hop = forwarded.split(",")[0].strip()
            if first_hop:
                return first_hop
    return request.client.host if request.client else None


async def _with_retry(runtime: Runtime, fn: Callable[[], Any], operation: str) -> Any:
    return await call_with_storage_retry(
        fn,
        attempts=runtime.settings.storage_retry_attempts,
        backoff_ms=runtime.settings.storage_retry_backoff_ms,
        operation=operation,
    )


async def current_lease(
    request: Request,
    authorization: Optional[str] = Header(None),
    x_lease_token: Optional[str] = Header(None, alias="X-Lease-Token"),
    runtime: Runtime = Depends(get_runtime),
) -> LeaseStatus:
    """Resolve the presented bearer secret to a valid lease or raise its typed error."""
    token = _bearer_token(authorization, x_lease_token)
    source = _client_source(request, runtime)
    return await _with_retry(
        runtime, lambda: runtime.validator.validate(token, source=source), "validate_lease"
    )


async def require_issuer(
    x_issuer_key: Optional[str] = Header(None, alias="X-Issuer-Key"),
    runtime: Runtime = Depends(get_runtime),
) -> None:
    expected = runtime.settings.issuer_api_key
    if not expected:
        raise ForbiddenError("lease issuance is not enabled")
    if not x_issuer_key or not hmac.compare_digest(
        x_issuer_key.encode("utf-8"), expected.encode("utf-8")
    ):
        logger.warning("issuer_key_rejected")
        raise ForbiddenError("invalid issuer key")


def _status_response(status: LeaseStatus) -> LeaseStatusResponse:
    lease = status.lease
    return LeaseStatusResponse(
        valid=True,
        remaining_seconds=status.remaining_seconds,
        idle_timeout_minutes=status.idle_timeout_minutes,
        hard_expiry_at=lease.hard_expiry_at,
        expires_by=status.expires_by,
        lease_id=lease.id,
        owner_id=lease.owner_id,
        tenant_id=lease.tenant_id,
        role=lease.role,
    )


def _preference_response(setting: IdleTimeoutSetting) -> IdleTimeoutResponse:
    return IdleTimeoutResponse(
        idle_timeout_minutes=setting.idle_timeout_minutes,
        minimum=setting.minimum,
        maximum=setting.maximum,
        default=setting.default,
        is_default=setting.is_default,
        options=setting.options,
        updated_at=setting.updated_at,
    )


@router.post("/leases", response_model=Envelope, status_code=201, tags=["leases"])
async def issue_lease(
    body: IssueLeaseRequest,
    runtime: Runtime = Depends(get_runtime),
    _: None = Depends(require_issuer),
):
    # Not retried: a commit of unknown outcome must not create a second lease.
    issued = await runtime.issuer.issue(
        body.owner_id,
        device_label=body.device_label,
        user_agent=body.user_agent,
        source_address=body.source_address,
        tenant_id=body.tenant_id,
        role=body.role,
    )
    return Envelope(
        status="ok",
        data=IssuedLeaseResponse(
            lease_id=issued.lease_id,
            token=issued.token,
            created_at=issued.created_at,
            hard_expiry_at=issued.hard_expiry_at,
            idle_timeout_minutes=issued.idle_timeout_minutes,
            shared=issued.shared,
        ),
    )


@router.get("/leases/current", response_model=Envelope, tags=["leases"])
async def lease_status(
    request: Request,
    authorization: Optional[str] = Header(None),
    x_lease_token: Optional[str] = Header(None, alias="X-Lease-Token"),
    runtime: Runtime = Depends(get_runtime),
):
    """Session-status poll.

    Expired, revoked and unknown leases answer ``valid: false`` with the
    reason so clients can tell idle expiry from the hard cap. Missing
    tokens and rate-limited sources still fail with their error codes.
    """
    try:
        status = await current_lease(request, authorization, x_lease_token, runtime)
    except LeaseExpired as exc:
        return Envelope(status="ok", data=LeaseStatusResponse(valid=False, reason=exc.reason))
    except LeaseRevoked:
        return Envelope(status="ok", data=LeaseStatusResponse(valid=False, reason="revoked"))
    except LeaseNotFound:
        return Envelope(status="ok", data=LeaseStatusResponse(valid=False, reason="not-found"))
    return Envelope(status="ok", data=_status_response(status))


@router.post("/leases/current/activity", response_model=Envelope, tags=["leases"])
async def record_activity(
    request: Request,
    body: Optional[ActivityRequest] = None,
    authorization: Optional[str] = Header(None),
    x_lease_token: Optional[str] = Header(None, alias="X-Lease-Token"),
    runtime: Runtime = Depends(get_runtime),
):
    token = _bearer_token(authorization, x_lease_token)
    source = _client_source(request, runtime)
    observed_at = body.observed_at if body else None
    ack = await _with_retry(
        runtime,
        lambda: runtime.activity.record(token, source=source, observed_at=observed_at),
        "record_activity",
    )
    return Envelope(
        status="ok",
        data=ActivityAckResponse(
            lease_id=ack.lease_id,
            persisted=ack.persisted,
            last_activity_at=ack.last_activity_at,
            hard_expiry_at=ack.hard_expiry_at,
            idle_timeout_minutes=ack.idle_timeout_minutes,
            remaining_seconds=ack.remaining_seconds,
        ),
    )


@router.get("/leases", response_model=Envelope, tags=["leases"])
async def list_leases(
    status: LeaseStatus = Depends(current_lease),
    runtime: Runtime = Depends(get_runtime),
):
    lease = status.lease
    items = await _with_retry(
        runtime,
        lambda: runtime.revocation.list_leases(lease.owner_id, current_lease_id=lease.id),
        "list_leases",
    )
    return Envelope(
        status="ok",
        data=LeaseListResponse(
            items=[
                LeaseItem(
                    id=item.id,
                    device_label=item.device_label,
                    source_address=item.source_address,
                    created_at=item.created_at,
                    last_activity_at=item.last_activity_at,
                    hard_expiry_at=item.hard_expiry_at,
                    is_current=item.is_current,
                )
                for item in items
            ]
        ),
    )


@router.get("/leases/stats", response_model=Envelope, tags=["leases"])
async def lease_stats(
    status: LeaseStatus = Depends(current_lease),
    runtime: Runtime = Depends(get_runtime),
):
    stats = await _with_retry(
        runtime, lambda: runtime.revocation.lease_stats(status.lease.owner_id), "lease_stats"
    )
    return Envelope(
        status="ok",
        data=LeaseStatsResponse(
            active_leases=stats.active_leases,
            last_activity_at=stats.last_activity_at,
            oldest_created_at=stats.oldest_created_at,
        ),
    )


@router.post("/leases/revoke-others", response_model=Envelope, tags=["leases"])
async def revoke_other_leases(
    status: LeaseStatus = Depends(current_lease),
    runtime: Runtime = Depends(get_runtime),
):
    lease = status.lease
    count = await _with_retry(
        runtime,
        lambda: runtime.revocation.revoke_others(lease.owner_id, lease.id),
        "revoke_others",
    )
    return Envelope(status="ok", data=RevokeResponse(revoked=count))


@router.post("/leases/revoke-all", response_model=Envelope, tags=["leases"])
async def revoke_all_leases(
    status: LeaseStatus = Depends(current_lease),
    runtime: Runtime = Depends(get_runtime),
):
    owner_id = status.lease.owner_id
    count = await _with_retry(
        runtime, lambda: runtime.revocation.revoke_all(owner_id), "revoke_all"
    )
    return Envelope(status="ok", data=RevokeResponse(revoked=count, discard_token=True))


@router.delete("/leases/{lease_id}", response_model=Envelope, tags=["leases"])
async def revoke_lease(
    lease_id: str = Path(..., max_length=64),
    status: LeaseStatus = Depends(current_lease),
    runtime: Runtime = Depends(get_runtime),
):
    lease = status.lease
    count = await _with_retry(
        runtime,
        lambda: runtime.revocation.revoke_lease(lease.owner_id, lease_id),
        "revoke_lease",
    )
    return Envelope(
        status="ok",
        data=RevokeResponse(revoked=count, discard_token=bool(count) and lease_id == lease.id),
    )


@router.get("/preferences/idle-timeout", response_model=Envelope, tags=["preferences"])
async def get_idle_timeout(
    status: LeaseStatus = Depends(current_lease),
    runtime: Runtime = Depends(get_runtime),
):
    setting = await _with_retry(
        runtime, lambda: runtime.preferences.get(status.lease.owner_id), "get_preference"
    )
    return Envelope(status="ok", data=_preference_response(setting))


@router.put("/preferences/idle-timeout", response_model=Envelope, tags=["preferences"])
async def set_idle_timeout(
    body: IdleTimeoutRequest,
    status: LeaseStatus = Depends(current_lease),
    runtime: Runtime = Depends(get_runtime),
):
    setting = await _with_retry(
        runtime,
        lambda: runtime.preferences.set(status.lease.owner_id, body.idle_timeout_minutes),
        "set_preference",
    )
    return Envelope(status="ok", data=_preference_response(setting))
