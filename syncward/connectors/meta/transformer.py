"""SYNCWARD — Meta Raw → FactRow Transformer.

Converts raw Meta insight rows into FactRows keyed by (entity_id, date).
Rows that arrive twice for the same key within one response are merged by
summing their additive metrics; rates are recomputed afterwards.
"""

from typing import Any, Dict, List

from syncward.core.metric_registry import ADDITIVE_METRICS, compute_rates
from syncward.core.logging import get_logger
from syncward.models.schemas import FactRow

logger = get_logger("meta.transformer")

# Direct-map fields from Meta insight response
DIRECT_METRICS = {
    "impressions": "impressions",
    "reach": "reach",
    "clicks": "clicks",
    "inline_link_clicks": "link_clicks",
    "spend": "spend",
}

PURCHASE_ACTIONS = ("purchase", "offsite_conversion.fb_pixel_purchase", "omni_purchase")

ENTITY_LEVELS = ("ad", "adset", "campaign", "account")


def _safe_float(value: Any) -> float:
    """Safely convert a value to float."""
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def _extract_entity_info(row: Dict[str, Any], level: str) -> tuple[str, str]:
    """Extract entity_id, entity_name from an insight row."""
    if level == "ad":
        return row.get("ad_id", ""), row.get("ad_name", "")
    elif level == "adset":
        return row.get("adset_id", ""), row.get("adset_name", "")
    elif level == "campaign":
        return row.get("campaign_id", ""), row.get("campaign_name", "")
    else:
        return row.get("account_id", ""), row.get("account_name", "Account")


def _extract_action_metrics(row: Dict[str, Any]) -> Dict[str, float]:
    """Extract action-based metrics (conversions, purchase value)."""
    metrics: Dict[str, float] = {}
    for action in row.get("actions") or []:
        action_type = action.get("action_type", "")
        value = _safe_float(action.get("value", 0))
        if action_type == "link_click" and "inline_link_clicks" not in row:
            metrics["link_clicks"] = value
        elif action_type in PURCHASE_ACTIONS:
            # Meta reports the same purchase under several aliases
            metrics["conversions"] = max(metrics.get("conversions", 0), value)

    for av in row.get("action_values") or []:
        if av.get("action_type") in PURCHASE_ACTIONS:
            metrics["purchase_value"] = max(
                metrics.get("purchase_value", 0), _safe_float(av.get("value", 0))
            )
    return metrics


def transform_insight_row(row: Dict[str, Any], level: str) -> FactRow:
    """Convert one raw insight row into a FactRow."""
    entity_id, entity_name = _extract_entity_info(row, level)

    metrics: Dict[str, float] = {name: 0.0 for name in ADDITIVE_METRICS}
    for source_field, metric_name in DIRECT_METRICS.items():
        if source_field in row:
            metrics[metric_name] = _safe_float(row[source_field])
    metrics.update(_extract_action_metrics(row))

    return FactRow(
        entity_id=str(entity_id),
        entity_name=entity_name or "",
        date=row.get("date_start", ""),
        account_id=str(row.get("account_id", "")),
        campaign_id=str(row.get("campaign_id", "")),
        adset_id=str(row.get("adset_id", "")),
        metrics=metrics,
        raw=row,
    )


def transform_insight_rows(raw_data: List[Dict[str, Any]], level: str) -> List[FactRow]:
    """Transform raw Meta insight rows into de-duplicated FactRows."""
    grouped: Dict[tuple[str, str], FactRow] = {}
    skipped = 0

    for row in raw_data:
        fact = transform_insight_row(row, level)
        if not fact.entity_id or not fact.date:
            skipped += 1
            continue
        key = (fact.entity_id, fact.date)
        existing = grouped.get(key)
        if existing is None:
            grouped[key] = fact
            continue
        for name in ADDITIVE_METRICS:
            existing.metrics[name] = existing.metrics.get(name, 0) + fact.metrics.get(name, 0)

    facts = list(grouped.values())
    for fact in facts:
        fact.metrics.update(compute_rates(fact.metrics, ("ctr", "cpc", "cpm")))

    if skipped:
        logger.warning(f"Skipped {skipped} insight rows without entity id or date")
    logger.info(
        f"Transformed {len(raw_data)} raw {level} rows into {len(facts)} unique facts"
    )
    return facts
