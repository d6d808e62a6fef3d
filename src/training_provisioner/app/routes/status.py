"""Read-only provisioning status API.

  GET /api/v1/requests      -> every provisioning request with its state
  GET /api/v1/static-pool   -> static pool handles and which are in use

Both endpoints read through the same record store the loops use; nothing
here writes.
"""

from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from training_provisioner.app.providers.static_pool import used_handles
from training_provisioner.app.provisioning.request import ProvisioningRequest, format_timestamp
from training_provisioner.app.provisioning.state_machine import REQUEST_STATES
from training_provisioner.app.store.errors import StoreError
from training_provisioner.app.store.kinds import PROVISIONING_REQUESTS


# ── Response schemas ──────────────────────────────────────────────────


class RequestSummary(BaseModel):
    id: str
    source: str
    requester: str
    state: str
    backend_type: str
    resource_handle: str = ''
    address: str = ''
    provisioned: bool = False
    allocated_at: str | None = None
    ready_at: str | None = None
    failed_at: str | None = None
    last_error_code: str | None = None
    last_error_detail: str | None = None

    @classmethod
    def from_request(cls, req: ProvisioningRequest) -> RequestSummary:
        return cls(
            id=req.id,
            source=req.source,
            requester=req.requester,
            state=req.state,
            backend_type=req.backend_type,
            resource_handle=req.resource_handle,
            address=req.address,
            provisioned=req.provisioned,
            allocated_at=format_timestamp(req.allocated_at),
            ready_at=format_timestamp(req.ready_at),
            failed_at=format_timestamp(req.failed_at),
            last_error_code=req.last_error_code,
            last_error_detail=req.last_error_detail,
        )


class RequestListResponse(BaseModel):
    requests: list[RequestSummary]
    counts: dict[str, int] = Field(
        description='Number of requests per lifecycle state.',
    )


class StaticPoolResponse(BaseModel):
    handles: list[str]
    used: list[str]
    free: list[str]


def _store_unavailable(exc: StoreError) -> JSONResponse:
    return JSONResponse(
        status_code=503,
        content={'code': 'STORE_UNAVAILABLE', 'message': exc.message},
    )


async def _load_requests(request: Request) -> list[ProvisioningRequest]:
    records = await request.app.state.deps.store.list(PROVISIONING_REQUESTS)
    return [ProvisioningRequest.from_record(r) for r in records]


# ── Router factory ────────────────────────────────────────────────────


def create_status_router() -> APIRouter:
    router = APIRouter(prefix='/api/v1', tags=['status'])

    @router.get('/requests', response_model=RequestListResponse)
    async def list_requests(request: Request, state: str | None = None):
        try:
            requests = await _load_requests(request)
        except StoreError as exc:
            return _store_unavailable(exc)

        counts = {s: 0 for s in sorted(REQUEST_STATES)}
        for req in requests:
            counts[req.state] = counts.get(req.state, 0) + 1

        if state is not None:
            requests = [r for r in requests if r.state == state]
        requests.sort(key=lambda r: r.id)
        return RequestListResponse(
            requests=[RequestSummary.from_request(r) for r in requests],
            counts=counts,
        )

    @router.get('/static-pool', response_model=StaticPoolResponse)
    async def static_pool(request: Request):
        settings = request.app.state.settings
        try:
            requests = await _load_requests(request)
        except StoreError as exc:
            return _store_unavailable(exc)

        used = used_handles(
            requests,
            now=datetime.now(timezone.utc),
            tracking_ttl_seconds=settings.tracking_ttl_seconds,
        )
        handles = list(request.app.state.deps.static_pool.handles)
        return StaticPoolResponse(
            handles=handles,
            used=[h for h in handles if h in used],
            free=[h for h in handles if h not in used],
        )

    return router
