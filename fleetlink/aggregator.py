"""Per-driver safety metrics rolled up from attributed safety events."""
import logging
from datetime import datetime
from typing import Dict, Iterable, List, Optional

import pandas as pd

logger = logging.getLogger(__name__)

RISK_NO_EVENTS = "No Events"
RISK_LOW = "Low Risk"
RISK_MEDIUM = "Medium Risk"
RISK_HIGH = "High Risk"

PERFORMANCE_BANDS = [
    (0.90, "Excellent"),
    (0.70, "Good"),
    (0.40, "Average"),
    (0.20, "Below Average"),
]
PERFORMANCE_FLOOR = "Needs Improvement"

EVENT_CATEGORIES = {
    "distraction": ("distract", "phone", "mobile"),
    "fatigue": ("fatigue", "microsleep", "drows", "yawn"),
    "fov": ("field of view", "fov", "camera covered", "obstruct"),
}

METRIC_COLUMNS = [
    "driver_id", "events_30d", "events_prev_30d", "events_90d", "events_total",
    "distraction_events_month", "fatigue_events_month", "fov_events_month",
    "critical_events_month", "high_events_month", "total_events_month",
    "verified_events_month", "verification_rate_pct", "days_since_first_event",
    "days_since_last_event", "trend_pct", "avg_attribution_confidence",
    "risk_classification",
]

INTEGER_COLUMNS = [
    "driver_id", "events_30d", "events_prev_30d", "events_90d", "events_total",
    "distraction_events_month", "fatigue_events_month", "fov_events_month",
    "critical_events_month", "high_events_month", "total_events_month",
    "verified_events_month", "days_since_first_event", "days_since_last_event",
]


def categorize_event(event_type: Optional[str]) -> Optional[str]:
    text = (event_type or "").lower()
    for category, keywords in EVENT_CATEGORIES.items():
        if any(k in text for k in keywords):
            return category
    return None


def classify_risk(total_month: int, critical_month: int, high_month: int) -> str:
    if total_month == 0:
        return RISK_NO_EVENTS
    if critical_month > 2 or high_month > 5:
        return RISK_HIGH
    if critical_month > 0 or high_month > 2:
        return RISK_MEDIUM
    return RISK_LOW


def performance_category(percentile: Optional[float]) -> Optional[str]:
    if percentile is None:
        return None
    for floor, label in PERFORMANCE_BANDS:
        if percentile >= floor:
            return label
    return PERFORMANCE_FLOOR


def _naive_utc(value) -> pd.Timestamp:
    ts = pd.Timestamp(value)
    if ts.tzinfo is not None:
        ts = ts.tz_convert("UTC").tz_localize(None)
    return ts


def _trend(recent: int, previous: int) -> Optional[float]:
    if previous == 0:
        return None
    return round((recent - previous) / previous * 100, 1)


def _empty_metrics(driver_id: int) -> Dict:
    row = {column: 0 for column in METRIC_COLUMNS}
    row.update({
        "driver_id": driver_id,
        "verification_rate_pct": None,
        "days_since_first_event": None,
        "days_since_last_event": None,
        "trend_pct": None,
        "avg_attribution_confidence": None,
        "risk_classification": RISK_NO_EVENTS,
    })
    return row


def compute_driver_safety_metrics(records: Iterable[Dict], as_of: datetime,
                                  driver_ids: Iterable[int] = ()) -> pd.DataFrame:
    """Roll attributed events up into one metrics row per driver.

    ``records`` are flat dicts with ``driver_id``, ``occurred_at``,
    ``event_type``, ``severity``, ``verified`` and ``attribution_confidence``.
    Drivers in ``driver_ids`` with no events still get a row.
    Events after ``as_of`` are ignored.
    """
    as_of_ts = _naive_utc(as_of)
    month_start = as_of_ts.normalize().replace(day=1)

    df = pd.DataFrame(list(records), columns=[
        "driver_id", "occurred_at", "event_type", "severity", "verified", "attribution_confidence",
    ])
    if not df.empty:
        df["occurred_at"] = pd.to_datetime(df["occurred_at"], utc=True).dt.tz_localize(None)
        df = df[df["occurred_at"] <= as_of_ts]
        df = df.dropna(subset=["driver_id"])

    rows = {}
    if not df.empty:
        age_days = (as_of_ts - df["occurred_at"]).dt.total_seconds() / 86400.0
        df = df.assign(
            age_days=age_days,
            category=df["event_type"].map(categorize_event),
            severity_key=df["severity"].fillna("").str.lower(),
            verified=df["verified"].fillna(False).astype(bool),
            in_month=df["occurred_at"] >= month_start,
        )

        for driver_id, group in df.groupby("driver_id"):
            month = group[group["in_month"]]
            recent = int((group["age_days"] < 30).sum())
            previous = int(((group["age_days"] >= 30) & (group["age_days"] < 60)).sum())
            total_month = len(month)
            critical = int((month["severity_key"] == "critical").sum())
            high = int((month["severity_key"] == "high").sum())
            verified = int(month["verified"].sum())
            confidence = group["attribution_confidence"].dropna()

            rows[int(driver_id)] = {
                "driver_id": int(driver_id),
                "events_30d": recent,
                "events_prev_30d": previous,
                "events_90d": int((group["age_days"] < 90).sum()),
                "events_total": len(group),
                "distraction_events_month": int((month["category"] == "distraction").sum()),
                "fatigue_events_month": int((month["category"] == "fatigue").sum()),
                "fov_events_month": int((month["category"] == "fov").sum()),
                "critical_events_month": critical,
                "high_events_month": high,
                "total_events_month": total_month,
                "verified_events_month": verified,
                "verification_rate_pct": round(verified / total_month * 100, 1) if total_month else None,
                "days_since_first_event": (as_of_ts.normalize() - group["occurred_at"].min().normalize()).days,
                "days_since_last_event": (as_of_ts.normalize() - group["occurred_at"].max().normalize()).days,
                "trend_pct": _trend(recent, previous),
                "avg_attribution_confidence": round(float(confidence.mean()), 3) if len(confidence) else None,
                "risk_classification": classify_risk(total_month, critical, high),
            }

    for driver_id in driver_ids:
        if driver_id not in rows:
            rows[driver_id] = _empty_metrics(driver_id)

    logger.info("Computed safety metrics for %d drivers as of %s", len(rows), as_of_ts)
    metrics = pd.DataFrame([rows[k] for k in sorted(rows)], columns=METRIC_COLUMNS)
    metrics[INTEGER_COLUMNS] = metrics[INTEGER_COLUMNS].astype("Int64")
    return metrics


def rank_driver_performance(metrics: pd.DataFrame) -> pd.DataFrame:
    """Rank drivers by 30-day event count; fewer events rank higher.

    Only drivers with at least one event ever are ranked. The percentile is
    1.0 for the safest driver and 0.0 for the riskiest; tied counts share a
    rank and a percentile.
    """
    ranked = metrics.copy()
    ranked["safety_rank"] = None
    ranked["safety_percentile"] = None
    ranked["performance_category"] = None

    eligible = ranked["events_total"] > 0
    count = int(eligible.sum())
    if count == 0:
        return ranked

    events = ranked.loc[eligible, "events_30d"]
    ranked.loc[eligible, "safety_rank"] = events.rank(method="min", ascending=True).astype(int)
    if count == 1:
        percentile = pd.Series(1.0, index=events.index)
    else:
        descending = events.rank(method="min", ascending=False)
        percentile = ((descending - 1) / (count - 1)).round(4)
    ranked.loc[eligible, "safety_percentile"] = percentile
    ranked.loc[eligible, "performance_category"] = percentile.map(performance_category)
    return ranked


def metrics_to_records(metrics: pd.DataFrame) -> List[Dict]:
    """DataFrame rows as plain-Python dicts (NaN becomes None)."""
    records = []
    for row in metrics.to_dict("records"):
        clean = {}
        for key, value in row.items():
            if value is not None and pd.isna(value):
                value = None
            elif hasattr(value, "item"):
                value = value.item()
            clean[key] = value
        records.append(clean)
    return records
