"""
Dashboard router: session control and read access to published metrics.

Reads never touch the pipeline; they return whatever the published metrics
store currently holds.
"""

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field, field_validator

from hostmetrics.engine import HostDashboardPipeline, PipelineNotStartedError, PublishedMetricsStore
from hostmetrics.models import Timeframe
from hostmetrics.utils.logging import get_logger

logger = get_logger(__name__)
router = APIRouter()


class SessionRequest(BaseModel):
    host_id: str = Field(min_length=1)
    timeframe: Timeframe = Timeframe.TODAY

    @field_validator("timeframe", mode="before")
    @classmethod
    def parse_timeframe(cls, v):
        return Timeframe.parse(v)


class TimeframeRequest(BaseModel):
    timeframe: Timeframe

    @field_validator("timeframe", mode="before")
    @classmethod
    def parse_timeframe(cls, v):
        return Timeframe.parse(v)


def get_pipeline(request: Request) -> HostDashboardPipeline:
    return request.app.state.pipeline


def get_metrics_store(request: Request) -> PublishedMetricsStore:
    return request.app.state.metrics_store


@router.post("/session")
async def start_session(
    body: SessionRequest,
    pipeline: HostDashboardPipeline = Depends(get_pipeline),
):
    """Start tracking a host for the given timeframe, replacing any current session."""
    context = await pipeline.start(body.host_id, body.timeframe)
    logger.info("dashboard_session_started", host_id=body.host_id, timeframe=body.timeframe.value)
    return {"success": True, "data": context.model_dump(mode="json")}


@router.put("/timeframe")
async def select_timeframe(
    body: TimeframeRequest,
    pipeline: HostDashboardPipeline = Depends(get_pipeline),
):
    """Switch the active session to another timeframe."""
    try:
        context = await pipeline.select_timeframe(body.timeframe)
    except PipelineNotStartedError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return {"success": True, "data": context.model_dump(mode="json")}


@router.post("/refresh")
async def refresh(
    pipeline: HostDashboardPipeline = Depends(get_pipeline),
    metrics_store: PublishedMetricsStore = Depends(get_metrics_store),
):
    """Recompute against a fresh "now" and return the resulting state."""
    try:
        await pipeline.refresh()
    except PipelineNotStartedError as e:
        raise HTTPException(status_code=409, detail=str(e))
    await pipeline.wait_until_idle()
    return {"success": True, "data": metrics_store.get_state().model_dump(mode="json")}


@router.delete("/session")
async def stop_session(pipeline: HostDashboardPipeline = Depends(get_pipeline)):
    """Stop tracking. The last published state stays readable."""
    await pipeline.stop()
    return {"success": True, "data": None}


@router.get("/snapshot")
async def get_snapshot(metrics_store: PublishedMetricsStore = Depends(get_metrics_store)):
    """Current rolled-up totals with freshness indicators."""
    state = metrics_store.get_state()
    return {
        "success": True,
        "data": {
            "host_id": state.host_id,
            "snapshot": state.snapshot.model_dump(mode="json"),
            "status": state.status.model_dump(mode="json"),
            "computed_at": state.computed_at.isoformat(),
        },
    }


@router.get("/daily-buckets")
async def get_daily_buckets(
    metric: str = Query("revenue", pattern="^(revenue|attendees|rsvps)$"),
    metrics_store: PublishedMetricsStore = Depends(get_metrics_store),
):
    """Sparse per-day series for charting, ascending by day."""
    buckets = metrics_store.get_daily_buckets(metric)
    return {
        "success": True,
        "data": {
            "metric": metric,
            "buckets": [
                {"day": bucket.key, "value": str(bucket.value), "count": bucket.count}
                for bucket in buckets
            ],
        },
    }


@router.get("/state")
async def get_state(metrics_store: PublishedMetricsStore = Depends(get_metrics_store)):
    """Full published dashboard state."""
    return {"success": True, "data": metrics_store.get_state().model_dump(mode="json")}
