from fastapi import APIRouter, Query, Request
from fastapi.responses import JSONResponse

from aicore.core.errors import RequestNotFound
from aicore.core.types import RequestState
from aicore.models.api import (
    BudgetUpdate,
    CacheInvalidateRequest,
    CancelResponse,
    IngestRequest,
    RequestResult,
    SearchRequest,
    SubmitRequest,
    SubmitResponse,
)
from aicore.services.orchestrator import Orchestrator
from aicore.vectors.index import SearchFilters
from aicore.vectors.pipeline import IngestItem

router = APIRouter()


def _orchestrator(request: Request) -> Orchestrator:
    orchestrator: Orchestrator = request.app.state.orchestrator
    return orchestrator


def _owned_status(request: Request, request_id: str) -> dict[str, object]:
    status = _orchestrator(request).status(request_id)
    if status["tenant_id"] != request.state.tenant_id:
        raise RequestNotFound(request_id)
    return status


@router.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/readyz")
def readyz(request: Request) -> dict[str, object]:
    orchestrator = _orchestrator(request)
    open_circuits = [
        health.provider_id
        for health in orchestrator.get_provider_health()
        if health.state.value == "open"
    ]
    providers = orchestrator.router.registry.list_providers()
    dependencies = {
        "workers": "ok" if orchestrator.running else "stopped",
        "provider": "ok" if len(open_circuits) < len(providers) else "degraded",
    }
    status = "ready" if all(value == "ok" for value in dependencies.values()) else "degraded"
    return {"status": status, "dependencies": dependencies, "open_circuits": open_circuits}


@router.post("/v1/ai/requests", status_code=202, response_model=SubmitResponse)
async def submit_request(request: Request, payload: SubmitRequest) -> SubmitResponse:
    orchestrator = _orchestrator(request)
    request_id = await orchestrator.submit(
        payload.operation,
        payload.payload,
        priority=payload.priority,
        tenant_id=request.state.tenant_id,
        user_id=request.state.user_id,
        params=payload.params,
        timeout_s=payload.timeout_s,
    )
    return SubmitResponse(request_id=request_id, status=orchestrator.status(request_id)["status"])


@router.get("/v1/ai/requests/{request_id}", response_model=None)
async def get_request(
    request: Request,
    request_id: str,
    wait_s: float = Query(default=0.0, ge=0.0, le=60.0),
) -> RequestResult | JSONResponse:
    orchestrator = _orchestrator(request)
    _owned_status(request, request_id)
    state = await orchestrator.wait(request_id, wait_s)
    if state in (RequestState.QUEUED, RequestState.RUNNING):
        return JSONResponse(
            status_code=202, content={"request_id": request_id, "status": state.value}
        )
    result = await orchestrator.await_result(request_id)
    return RequestResult(status=state.value, **result.as_dict())


@router.delete("/v1/ai/requests/{request_id}", response_model=CancelResponse)
async def cancel_request(request: Request, request_id: str) -> CancelResponse:
    _owned_status(request, request_id)
    cancelled = _orchestrator(request).cancel(request_id)
    return CancelResponse(request_id=request_id, cancelled=cancelled)


@router.post("/v1/vectors/ingest")
async def ingest_vectors(request: Request, payload: IngestRequest) -> dict[str, object]:
    report = await _orchestrator(request).ingest_content(
        request.state.tenant_id,
        [
            IngestItem(
                text=item.text,
                source_id=item.source_id,
                created_at=item.created_at,
                metadata=item.metadata,
            )
            for item in payload.items
        ],
        user_id=request.state.user_id,
    )
    return report.as_dict()


@router.post("/v1/vectors/search")
async def search_vectors(request: Request, payload: SearchRequest) -> dict[str, object]:
    filters = SearchFilters(**payload.filters.model_dump()) if payload.filters else None
    hits = await _orchestrator(request).search(
        request.state.tenant_id,
        query_text=payload.query,
        query_vector=payload.vector,
        k=payload.limit,
        filters=filters,
        min_score=payload.min_score,
        rank_by=payload.rank_by,
        user_id=request.state.user_id,
    )
    return {"hits": [hit.as_dict() for hit in hits], "count": len(hits)}


@router.get("/v1/admin/budgets/{tenant_id}")
def get_budget(request: Request, tenant_id: str) -> dict[str, object]:
    return _orchestrator(request).get_budget(tenant_id)


@router.put("/v1/admin/budgets/{tenant_id}")
def set_budget(request: Request, tenant_id: str, payload: BudgetUpdate) -> dict[str, object]:
    return _orchestrator(request).set_budget(tenant_id, payload.limit_cents)


@router.post("/v1/admin/cache/invalidate")
def invalidate_cache(request: Request, payload: CacheInvalidateRequest) -> dict[str, object]:
    removed = _orchestrator(request).invalidate_cache(payload.pattern)
    return {"pattern": payload.pattern, "removed": removed}


@router.get("/v1/admin/cache/stats")
def cache_stats(request: Request) -> dict[str, object]:
    return _orchestrator(request).cache_stats()


@router.get("/v1/admin/providers/health")
def provider_health(request: Request) -> dict[str, object]:
    return {
        "providers": [health.as_dict() for health in _orchestrator(request).get_provider_health()]
    }


@router.get("/v1/admin/stats")
def service_stats(request: Request) -> dict[str, object]:
    return _orchestrator(request).stats()
