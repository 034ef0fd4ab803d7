from fastapi import APIRouter, HTTPException, Response

from apps.api.dependencies.tickets import TicketServiceDep
from apps.api.metrics import PROMETHEUS_CONTENT_TYPE, metrics_registry, render_prometheus
from apps.api.services.tickets import TicketStoreError

router = APIRouter(tags=["health"])


@router.get("/ping", summary="Liveness probe")
async def ping() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/ping/ready", summary="Readiness probe checking the ticket store")
async def ready(service: TicketServiceDep) -> dict[str, str]:
    try:
        await service.ping()
    except TicketStoreError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return {"status": "ok"}


@router.get("/metrics", response_class=Response, include_in_schema=False)
async def metrics() -> Response:
    return Response(content=render_prometheus(metrics_registry), media_type=PROMETHEUS_CONTENT_TYPE)
