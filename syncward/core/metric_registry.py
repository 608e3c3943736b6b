"""SYNCWARD — Fact Metric Registry.

Defines the metric columns carried on every DailyFact and how each one rolls
up. Additive metrics are summed; rates are always recomputed from the summed
components, never averaged.
"""

from enum import Enum
from typing import Callable, Dict, Optional


class MetricType(str, Enum):
    """How a metric is categorised."""

    VOLUME = "volume"  # Raw counts: impressions, clicks, reach
    COST = "cost"  # Monetary: spend
    REVENUE = "revenue"  # Income: purchase_value
    RATE = "rate"  # Ratios: ctr, cpc, cpm, roas


class MetricDefinition:
    """Describes a single metric."""

    def __init__(
        self,
        name: str,
        metric_type: MetricType,
        unit: str = "",
        description: str = "",
        formula: Optional[Callable[[Dict[str, float]], float]] = None,
    ):
        self.name = name
        self.metric_type = metric_type
        self.unit = unit
        self.description = description
        self.formula = formula

    @property
    def additive(self) -> bool:
        return self.metric_type != MetricType.RATE

    def __repr__(self) -> str:
        return f"<Metric {self.name} ({self.metric_type.value})>"


def _ratio(numerator: float, denominator: float, scale: float = 1.0) -> float:
    return (numerator / denominator * scale) if denominator > 0 else 0.0


# ─────────────────────────────────────────────
# FACT METRICS (canonical registry)
# ─────────────────────────────────────────────

FACT_METRICS: Dict[str, MetricDefinition] = {
    # Volume
    "impressions": MetricDefinition(
        "impressions", MetricType.VOLUME, "count", "Number of times ad was shown"
    ),
    "clicks": MetricDefinition("clicks", MetricType.VOLUME, "count", "Total clicks"),
    "reach": MetricDefinition(
        "reach", MetricType.VOLUME, "count", "Unique users who saw ad"
    ),
    "link_clicks": MetricDefinition(
        "link_clicks", MetricType.VOLUME, "count", "Clicks on ad links"
    ),
    "conversions": MetricDefinition(
        "conversions", MetricType.VOLUME, "count", "Purchase conversions"
    ),
    # Cost
    "spend": MetricDefinition(
        "spend", MetricType.COST, "currency", "Total amount spent"
    ),
    # Revenue
    "purchase_value": MetricDefinition(
        "purchase_value",
        MetricType.REVENUE,
        "currency",
        "Total purchase conversion value",
    ),
}

RATE_METRICS: Dict[str, MetricDefinition] = {
    "ctr": MetricDefinition(
        "ctr",
        MetricType.RATE,
        "%",
        "Click-through rate",
        lambda m: _ratio(m.get("clicks", 0), m.get("impressions", 0), 100),
    ),
    "cpc": MetricDefinition(
        "cpc",
        MetricType.RATE,
        "currency",
        "Cost per click",
        lambda m: _ratio(m.get("spend", 0), m.get("clicks", 0)),
    ),
    "cpm": MetricDefinition(
        "cpm",
        MetricType.RATE,
        "currency",
        "Cost per 1000 impressions",
        lambda m: _ratio(m.get("spend", 0), m.get("impressions", 0), 1000),
    ),
    "roas": MetricDefinition(
        "roas",
        MetricType.RATE,
        "ratio",
        "Return on ad spend",
        lambda m: _ratio(m.get("purchase_value", 0), m.get("spend", 0)),
    ),
}


# ─────────────────────────────────────────────
# HELPERS
# ─────────────────────────────────────────────

ADDITIVE_METRICS = tuple(name for name, m in FACT_METRICS.items() if m.additive)


def compute_rates(sums: Dict[str, float], names=None) -> Dict[str, float]:
    """Recompute every (or the named) rate metric from summed components."""
    selected = names or RATE_METRICS.keys()
    return {
        name: round(RATE_METRICS[name].formula(sums), 6)
        for name in selected
        if name in RATE_METRICS
    }
