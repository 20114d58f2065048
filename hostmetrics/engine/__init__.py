"""
Host analytics engine core components.

- Normalization: raw store documents -> typed records
- Rollup: windowed totals, distinct counts and daily buckets
- Dashboard aggregation: snapshot composition for one timeframe
- Fallback orchestration: index-free fan-out when compound queries fail
- Published metrics store: immutable state swapped for consumers
- Pipeline: single-owner live wiring of all of the above
"""

__all__ = [
    "DashboardAggregator",
    "FallbackPlan",
    "FallbackQueryOrchestrator",
    "HostDashboardPipeline",
    "PipelineNotStartedError",
    "PublishedMetricsStore",
    "RollupEngine",
    "SourceQuery",
    "TierPriceJoin",
    "normalize_batch",
    "resolve_window",
]

from hostmetrics.engine.dashboard import DashboardAggregator
from hostmetrics.engine.fallback import FallbackPlan, FallbackQueryOrchestrator, SourceQuery
from hostmetrics.engine.metrics_store import PublishedMetricsStore
from hostmetrics.engine.normalizer import normalize_batch
from hostmetrics.engine.pipeline import HostDashboardPipeline, PipelineNotStartedError
from hostmetrics.engine.rollup import RollupEngine, TierPriceJoin
from hostmetrics.engine.timeframes import resolve_window
