"""Group-and-reduce helpers turning a StructuredDocument into chart points."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .documents import StructuredDocument

logger = logging.getLogger("dashboard.aggregation")

AGGREGATIONS = ("count", "sum", "avg")
UNKNOWN_LABEL = "Unknown"


@dataclass
class AggregateSeries:
    """Aggregated points plus the fields and aggregation actually applied."""
    points: List[Dict[str, Any]] = field(default_factory=list)
    group_field: Optional[str] = None
    metric_field: Optional[str] = None
    requested_aggregation: str = "count"
    aggregation: str = "count"

    @property
    def fell_back_to_count(self) -> bool:
        return self.aggregation != self.requested_aggregation


def aggregate_document(
    document: StructuredDocument,
    group_by: Optional[str] = None,
    metric: Optional[str] = None,
    aggregation: Optional[str] = "count",
) -> AggregateSeries:
    """Purpose: Group document rows by a categorical field and reduce a numeric field.
    Inputs/Outputs: Inputs are the document, optional group/metric field names, and the
        aggregation (count|sum|avg); output is an AggregateSeries of {label, value} points.
    Side Effects / State: Logs a warning when the requested aggregation cannot be applied.
    Dependencies: Uses coerce_number and group_label.
    Failure Modes: None; an empty document gives an empty series.
    If Removed: Document and compare charts have no data source.
    Testing Notes: Sum of Rev by Region over [Asia 10, EU 20, Asia 5] is [Asia 15, EU 20].
    """
    # Resolve fields: invalid group falls back to the first column, invalid metric to none.
    requested = aggregation if aggregation in AGGREGATIONS else "count"
    if not document.fields:
        return AggregateSeries(requested_aggregation=requested, aggregation=requested)
    group_field = group_by if group_by in document.fields else document.fields[0]
    metric_field = metric if metric in document.fields else None
    effective = requested if metric_field else "count"
    if effective != requested:
        logger.warning(
            "metric=%r not in fields; applying count instead of %s", metric, requested
        )

    groups: Dict[str, List[float]] = {}
    for row in document.full_data:
        key = group_label(row.get(group_field))
        value = coerce_number(row.get(metric_field)) if metric_field else 1.0
        groups.setdefault(key, []).append(value)

    points = []
    for label, values in groups.items():
        if effective == "sum":
            value = math.fsum(values)
        elif effective == "avg":
            value = math.fsum(values) / len(values) if values else 0.0
        else:
            value = len(values)
        points.append({"label": label, "value": value})

    return AggregateSeries(
        points=points,
        group_field=group_field,
        metric_field=metric_field,
        requested_aggregation=requested,
        aggregation=effective,
    )


def coerce_number(value: Any) -> float:
    """Numeric coercion for metric cells; anything non-numeric or non-finite counts as 0."""
    if value is None:
        return 0.0
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if isinstance(value, (int, float)):
        number = float(value)
    else:
        text = str(value).strip()
        if not text:
            return 0.0
        try:
            number = float(text)
        except ValueError:
            return 0.0
    return number if math.isfinite(number) else 0.0


def group_label(value: Any) -> str:
    if value is None or (isinstance(value, str) and not value.strip()):
        return UNKNOWN_LABEL
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)
