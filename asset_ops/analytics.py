"""Aggregate counts, chart series and filters over the record store."""
from __future__ import annotations

from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from .config import CHART_TOP_N
from .csv_io import parse_number
from .schema import FieldDefinition

KPI_STATUSES = ("Installed", "Spare", "Planned")
TOTAL_KPI = "Total Assets"
CHART_METRICS = ("count", "sum_nos")


def _nos(record: Dict[str, Any]) -> float:
    value = record.get("nos")
    if value is None or value == "":
        return 0.0
    return parse_number(value)


def _status_is(record: Dict[str, Any], status: str) -> bool:
    return str(record.get("status")).lower() == status.lower()


def _parse_date(value: Any) -> Optional[date]:
    if not value:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    for fmt in ("%Y-%m-%d", "%m/%d/%Y", "%Y/%m/%d", "%d-%m-%Y"):
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    try:
        return datetime.fromisoformat(text).date()
    except ValueError:
        return None


def _number(value: float) -> Any:
    return int(value) if float(value).is_integer() else value


# ------------------------------------------------------------------
# KPIs
# ------------------------------------------------------------------
def kpis(records: Iterable[Dict[str, Any]]) -> Dict[str, Any]:
    records = list(records)
    out = {"total_assets": _number(sum(_nos(r) for r in records))}
    for status in KPI_STATUSES:
        total = sum(_nos(r) for r in records if _status_is(r, status))
        out[status.lower()] = _number(total)
    return out


def kpi_breakdown(records: Iterable[Dict[str, Any]], kind: str) -> List[Tuple[str, Any]]:
    """Quantity per "material - model" for one KPI tile."""
    selected = list(records)
    if kind != TOTAL_KPI:
        if kind not in KPI_STATUSES:
            raise ValueError(f"unknown KPI '{kind}'")
        selected = [r for r in selected if _status_is(r, kind)]

    breakdown: Dict[str, float] = {}
    for record in selected:
        key = f"{record.get('materialType') or 'Unknown'} - {record.get('modelVariant') or 'Unknown'}"
        breakdown[key] = breakdown.get(key, 0.0) + _nos(record)
    ranked = sorted(breakdown.items(), key=lambda kv: kv[1], reverse=True)
    return [(name, _number(total)) for name, total in ranked]


# ------------------------------------------------------------------
# Charts
# ------------------------------------------------------------------
def chart_series(records: Iterable[Dict[str, Any]], group_by: str, metric: str = "count",
                 top_n: int = CHART_TOP_N) -> Dict[str, Any]:
    if metric not in CHART_METRICS:
        raise ValueError(f"unknown metric '{metric}'")
    data: Dict[str, float] = {}
    for record in records:
        key = str(record.get(group_by) or "Unknown")
        value = _nos(record) if metric == "sum_nos" else 1
        data[key] = data.get(key, 0) + value
    ranked = sorted(data.items(), key=lambda kv: kv[1], reverse=True)[:top_n]
    series = [(label, _number(value)) for label, value in ranked]
    max_value = max([v for _, v in series] + [1])
    return {"group_by": group_by, "metric": metric, "series": series, "max_value": max_value}


# ------------------------------------------------------------------
# Engineers
# ------------------------------------------------------------------
def engineers(records: Iterable[Dict[str, Any]]) -> List[str]:
    return sorted({str(r["assignedTo"]) for r in records if r.get("assignedTo")})


def engineer_breakdown(records: Iterable[Dict[str, Any]], name: str) -> Dict[str, Any]:
    items = [r for r in records if r.get("assignedTo") == name]
    return {
        "engineer": name,
        "items": items,
        "spares": sum(1 for r in items if _status_is(r, "spare")),
        "installed": sum(1 for r in items if _status_is(r, "installed")),
        "returned": sum(1 for r in items if _status_is(r, "returned")),
        "planned": sum(1 for r in items if _status_is(r, "planned")),
    }


# ------------------------------------------------------------------
# Filters
# ------------------------------------------------------------------
def search(records: Iterable[Dict[str, Any]], term: str, fields: Sequence[FieldDefinition]) -> List[Dict[str, Any]]:
    """Case-insensitive substring match over the schema's fields."""
    needle = (term or "").strip().lower()
    if not needle:
        return list(records)
    hits = []
    for record in records:
        for f in fields:
            value = record.get(f.id)
            if value not in (None, "") and needle in str(value).lower():
                hits.append(record)
                break
    return hits


def date_range(records: Iterable[Dict[str, Any]], start: Optional[str] = None,
               end: Optional[str] = None) -> List[Dict[str, Any]]:
    """Records whose ``date`` falls within [start, end]; undated records are dropped."""
    lo = _parse_date(start) if start else None
    hi = _parse_date(end) if end else None
    selected = []
    for record in records:
        when = _parse_date(record.get("date"))
        if when is None:
            continue
        if lo and when < lo:
            continue
        if hi and when > hi:
            continue
        selected.append(record)
    return selected
