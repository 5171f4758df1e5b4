from fastapi import APIRouter, Request
from fastapi.responses import PlainTextResponse

from ticketflow.metrics import PrometheusExporter, metrics_registry

router = APIRouter(tags=["health"])


@router.get("/ping", summary="Public health check")
async def ping() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/metrics", summary="Prometheus metrics", response_class=PlainTextResponse)
async def metrics(request: Request) -> PlainTextResponse:
    registry = getattr(request.app.state, "metrics_registry", None) or metrics_registry
    exporter = PrometheusExporter(registry)
    return PlainTextResponse(exporter.build_payload(), media_type=exporter.content_type)
