"""Reporting KPIs computed over incidents created in a date range."""

import calendar
from collections import Counter
from datetime import datetime, timedelta
from typing import Optional

from ..auth.rbac import PERM_VIEW_ANALYTICS, check_permission
from ..auth.session import SessionContext
from ..errors import ValidationError
from ..models.base import as_utc, utcnow
from ..utils.logging import get_logger
from .incident_store import IncidentQuery
from .states import IncidentStatus

logger = get_logger("engine.analytics")

DATE_RANGES = ("7d", "30d", "month", "year")
TREND_DAYS = 7
TOP_RESPONDERS = 5
HIGH_RATING_THRESHOLD = 0.95


def range_start(date_range: str, now: datetime) -> datetime:
    if date_range == "7d":
        return now - timedelta(days=7)
    if date_range == "30d":
        return now - timedelta(days=30)
    if date_range == "month":
        year, month = (now.year, now.month - 1) if now.month > 1 else (now.year - 1, 12)
        day = min(now.day, calendar.monthrange(year, month)[1])
        return now.replace(year=year, month=month, day=day)
    if date_range == "year":
        day = min(now.day, calendar.monthrange(now.year - 1, now.month)[1])
        return now.replace(year=now.year - 1, day=day)
    raise ValidationError(
        f"Unknown date range {date_range!r}. Expected one of: {', '.join(DATE_RANGES)}",
        field="date_range",
    )


def format_duration(seconds: float) -> str:
    hours, minutes = divmod(int(round(seconds / 60)), 60)
    return f"{hours}h {minutes}m"


def _parse(value: Optional[str]) -> Optional[datetime]:
    return as_utc(datetime.fromisoformat(value)) if value else None


class AnalyticsService:
    """Dashboard numbers for reviewers and admins."""

    def __init__(self, store, categories=None) -> None:
        self._store = store
        self._categories = categories

    async def get_analytics(
        self,
        date_range: str,
        session: SessionContext,
        now: Optional[datetime] = None,
    ) -> dict:
        check_permission(session, PERM_VIEW_ANALYTICS, "view analytics")
        now = as_utc(now) if now else utcnow()
        start = range_start(date_range, now)
        incidents = await self._store.query(IncidentQuery(created_after=start))

        total = len(incidents)
        resolved = [i for i in incidents if i["status"] == IncidentStatus.RESOLVED.value]

        durations = [
            (_parse(i["resolved_at"]) - _parse(i["created_at"])).total_seconds()
            for i in resolved
            if i["resolved_at"]
        ]
        avg_seconds = sum(durations) / len(durations) if durations else 0.0

        result = {
            "date_range": date_range,
            "start": start.isoformat(),
            "total": total,
            "resolved": len(resolved),
            "avg_time": format_duration(avg_seconds),
            "avg_time_seconds": round(avg_seconds),
            "issue_types": await self._issue_types(incidents),
            "top_responders": self._top_responders(incidents),
            "trend_data": self._trend(incidents, now),
        }
        logger.debug("analytics_computed", date_range=date_range, total=total)
        return result

    async def _issue_types(self, incidents: list[dict]) -> list[dict]:
        counts = Counter(i["category"] for i in incidents)
        styles = {}
        if self._categories is not None:
            styles = {c["name"]: c for c in await self._categories.list_categories()}
        total = len(incidents)
        return [
            {
                "name": name,
                "icon": styles.get(name, {}).get("icon"),
                "color": styles.get(name, {}).get("color"),
                "count": count,
                "percentage": round(count / total * 100) if total else 0,
            }
            for name, count in sorted(counts.items(), key=lambda item: (-item[1], item[0]))
        ]

    @staticmethod
    def _top_responders(incidents: list[dict]) -> list[dict]:
        stats: dict[str, dict] = {}
        for incident in incidents:
            responder_id = incident["assigned_to"]
            if not responder_id:
                continue
            entry = stats.setdefault(
                responder_id,
                {"name": incident["assigned_to_name"] or "Unknown", "tickets": 0, "resolved": 0},
            )
            entry["tickets"] += 1
            if incident["status"] == IncidentStatus.RESOLVED.value:
                entry["resolved"] += 1

        ranked = []
        for responder_id, entry in stats.items():
            ratio = entry["resolved"] / entry["tickets"]
            ranked.append({
                "id": responder_id,
                "name": entry["name"],
                "tickets": entry["tickets"],
                "resolved": entry["resolved"],
                "efficiency": round(ratio * 100),
                "rating": "High" if ratio > HIGH_RATING_THRESHOLD else "Good",
            })
        ranked.sort(key=lambda r: (-r["efficiency"], -r["tickets"], r["name"]))
        return ranked[:TOP_RESPONDERS]

    @staticmethod
    def _trend(incidents: list[dict], now: datetime) -> list[int]:
        """Incident counts per day over the last week, oldest first."""
        trend = [0] * TREND_DAYS
        for incident in incidents:
            days_ago = (now - _parse(incident["created_at"])).days
            if 0 <= days_ago < TREND_DAYS:
                trend[TREND_DAYS - 1 - days_ago] += 1
        return trend
