"""Live metrics aggregation for the PlanIt host dashboard."""

__version__ = "0.1.0"
