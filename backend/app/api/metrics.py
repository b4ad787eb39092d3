"""Prometheus-compatible metrics endpoint."""

from fastapi import APIRouter, Query, Response

from app.monitoring.registry import registry

PROMETHEUS_CONTENT_TYPE = "text/plain; version=0.0.4"

router = APIRouter(tags=["metrics"])


@router.get("/metrics", response_class=Response)
def export_metrics(
    prefix: str | None = Query(
        default=None,
        description="Only export metric families whose name starts with this prefix",
    ),
) -> Response:
    """Expose room, presence and audio metrics for Prometheus scraping."""

    return Response(content=registry.render(prefix=prefix), media_type=PROMETHEUS_CONTENT_TYPE)
