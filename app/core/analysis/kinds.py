import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from functools import partial
from typing import Any, Callable, Dict, List, Optional

from app.core.analysis.runner import QueryBuilder, QuerySpec, ResultTransform
from app.core.errors import BuildError, TransformError
from app.core.integrations.base import Rows
from app.core.schemas import (
    DimensionSlicesParams,
    MetricAggregateParams,
    MetricDefinition,
)


# -----------------------------------------------------------------------------
# KINDS MODULE
# Purpose: every analysis kind brings its own params, query builders and
# result transform. The runner stays generic.
# Transforms are pure: they never mutate the raw rows and return the same
# aggregate for the same input.
# -----------------------------------------------------------------------------


MAX_SLICES_PER_DIMENSION = 20
NULL_SLICE = "__null__"

IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


@dataclass(frozen=True)
class AnalysisKind:
    name: str
    target_key: Callable[[Any], str]
    query_builders: Callable[[Any], List[QueryBuilder]]
    result_transform: Callable[[Any], ResultTransform]


def lookback_template_vars(
    lookback_days: int, end_date: Optional[datetime] = None
) -> Dict[str, Any]:
    """
    Template variables shared by every kind.

    Example:
        {"startDate": datetime(2025, 1, 1), "endDate": datetime(2025, 1, 31),
         "lookbackDays": 30}
    """
    end = end_date or datetime.now(timezone.utc)
    return {
        "startDate": end - timedelta(days=lookback_days),
        "endDate": end,
        "lookbackDays": lookback_days,
    }


def _check_identifier(value: str, what: str) -> str:
    if not IDENTIFIER_PATTERN.match(value):
        raise BuildError(f"Invalid {what}: {value!r}")
    return value


# =========================
# Dimension slices
# =========================
def build_dimension_slices_query(params: DimensionSlicesParams) -> QuerySpec:
    """
    Count distinct units per value of every dimension of an exposure query.

    Returns rows of (dimension_name, dimension_value, units, total_units).
    """
    user_id = _check_identifier(params.user_id_column, "user id column")
    dimensions = [_check_identifier(d, "dimension") for d in params.dimensions]

    per_dimension = "\n    UNION ALL\n".join(
        f"    SELECT '{dimension}' AS dimension_name, "
        f"CAST({dimension} AS VARCHAR) AS dimension_value, "
        f"COUNT(DISTINCT {user_id}) AS units "
        f"FROM __filtered GROUP BY {dimension}"
        for dimension in dimensions
    )

    sql = (
        "WITH __rawExperiment AS (\n"
        f"  {params.exposure_sql.strip().rstrip(';')}\n"
        "),\n"
        "__filtered AS (\n"
        "  SELECT * FROM __rawExperiment\n"
        "  WHERE timestamp >= '{{ startDate }}' AND timestamp <= '{{ endDate }}'\n"
        "),\n"
        "__totalUnits AS (\n"
        f"  SELECT COUNT(DISTINCT {user_id}) AS total_units FROM __filtered\n"
        ")\n"
        "SELECT d.dimension_name, d.dimension_value, d.units, t.total_units\n"
        "FROM (\n"
        f"{per_dimension}\n"
        ") d CROSS JOIN __totalUnits t"
    )

    return QuerySpec(
        name="dimension_slices",
        sql=sql,
        template_vars=lookback_template_vars(params.lookback_days, params.end_date),
    )


def transform_dimension_slices(results: List[Rows]) -> Dict[str, Any]:
    """
    Turn per-dimension unit counts into the most common slices.

    Example:
        {"total_units": 100, "dimensions": [
            {"dimension": "country", "slices": [
                {"name": "US", "units": 60, "percent": 60.0}, ...]}]}
    """
    if len(results) != 1:
        raise TransformError(f"Expected 1 result set, got {len(results)}")

    total_units = 0
    grouped: Dict[str, List[Dict[str, Any]]] = {}

    for row in results[0]:
        try:
            name = row["dimension_name"]
            value = row["dimension_value"]
            units = int(row["units"])
            total_units = max(total_units, int(row["total_units"]))
        except (KeyError, TypeError, ValueError) as e:
            raise TransformError(f"Unexpected dimension slices row {row!r}: {e}")

        grouped.setdefault(name, []).append(
            {"name": NULL_SLICE if value is None else str(value), "units": units}
        )

    dimensions = []
    for name, slices in grouped.items():
        top = sorted(slices, key=lambda s: (-s["units"], s["name"]))
        dimensions.append(
            {
                "dimension": name,
                "slices": [
                    {
                        "name": s["name"],
                        "units": s["units"],
                        "percent": round(s["units"] / total_units * 100, 2)
                        if total_units
                        else 0.0,
                    }
                    for s in top[:MAX_SLICES_PER_DIMENSION]
                ],
            }
        )

    return {"total_units": total_units, "dimensions": dimensions}


DIMENSION_SLICES = AnalysisKind(
    name="dimension_slices",
    target_key=lambda p: f"{p.datasource_id}:{p.exposure_query_id}",
    query_builders=lambda p: [build_dimension_slices_query],
    result_transform=lambda p: transform_dimension_slices,
)


# =========================
# Metric aggregates
# =========================
def build_metric_query(
    params: MetricAggregateParams, metric: MetricDefinition
) -> QuerySpec:
    sql = (
        "SELECT COUNT(*) AS count, COALESCE(SUM(m.value), 0) AS total, "
        "AVG(m.value) AS mean\n"
        f"FROM (\n  {metric.sql.strip().rstrip(';')}\n) m\n"
        "WHERE m.timestamp >= '{{ startDate }}' AND m.timestamp <= '{{ endDate }}'"
    )
    return QuerySpec(
        name=f"metric:{metric.name}",
        sql=sql,
        template_vars=lookback_template_vars(params.lookback_days, params.end_date),
    )


def transform_metric_aggregates(
    metric_names: List[str], results: List[Rows]
) -> Dict[str, Any]:
    """One summary per metric, in the order the metrics were requested."""
    if len(results) != len(metric_names):
        raise TransformError(
            f"Expected {len(metric_names)} result sets, got {len(results)}"
        )

    metrics = []
    for name, rows in zip(metric_names, results):
        if len(rows) != 1:
            raise TransformError(f"Metric {name} returned {len(rows)} rows, expected 1")
        row = rows[0]
        try:
            count = int(row["count"])
            total = float(row["total"] or 0)
            mean = float(row["mean"]) if row["mean"] is not None else None
        except (KeyError, TypeError, ValueError) as e:
            raise TransformError(f"Unexpected row for metric {name}: {e}")

        metrics.append({"name": name, "count": count, "total": total, "mean": mean})

    return {"metrics": metrics}


def _metric_target_key(params: MetricAggregateParams) -> str:
    names = ",".join(sorted(metric.name for metric in params.metrics))
    return f"{params.datasource_id}:{names}"


METRIC_AGGREGATE = AnalysisKind(
    name="metric_aggregate",
    target_key=_metric_target_key,
    query_builders=lambda p: [
        partial(build_metric_query, metric=metric) for metric in p.metrics
    ],
    result_transform=lambda p: partial(
        transform_metric_aggregates, [metric.name for metric in p.metrics]
    ),
)


ANALYSIS_KINDS: Dict[str, AnalysisKind] = {
    kind.name: kind for kind in (DIMENSION_SLICES, METRIC_AGGREGATE)
}
