import csv
import io
import math
from collections import Counter, defaultdict
from datetime import date, datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional

from campus_complaints.models.models import Complaint, ComplaintStatus, ComplaintPriority, Profile
from campus_complaints.schemas.schemas import (
    ReportSummary, NamedCount, CategoryResolutionTime, TrendPoint, StatusCounts,
)

CSV_HEADERS = [
    "ID", "Subject", "Category", "Status", "Priority", "Student Name", "Student Email",
    "Created At", "Resolved At", "Resolution Days", "Admin Response",
]
CSV_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
UNKNOWN_CATEGORY = "Unknown"


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Naive UTC datetime regardless of whether the driver returned tz-aware values
    """
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def resolution_days(complaint: Complaint) -> Optional[int]:
    """
    Whole days from submission to resolution, rounded up, never negative
    """
    if not complaint.resolved_at or not complaint.created_at:
        return None
    elapsed = as_utc(complaint.resolved_at) - as_utc(complaint.created_at)
    return max(0, math.ceil(elapsed.total_seconds() / 86400))


def category_name(complaint: Complaint) -> str:
    return complaint.category.name if complaint.category else UNKNOWN_CATEGORY


def status_counts(counts: Dict[str, int]) -> StatusCounts:
    return StatusCounts(total=sum(counts.values()), **counts)


def resolution_rate(resolved: int, total: int) -> int:
    return round(resolved / total * 100) if total else 0


def build_trend(complaints: List[Complaint], days: int, today: date) -> List[TrendPoint]:
    created = [as_utc(c.created_at) for c in complaints if c.created_at]
    resolved = [as_utc(c.resolved_at) for c in complaints if c.resolved_at]
    created_per_day = Counter(d.date() for d in created)
    resolved_per_day = Counter(d.date() for d in resolved)

    trend = []
    for offset in range(days - 1, -1, -1):
        day = today - timedelta(days=offset)
        trend.append(TrendPoint(
            date=day,
            submitted=created_per_day.get(day, 0),
            resolved=resolved_per_day.get(day, 0),
            total=sum(1 for d in created if d.date() <= day),
        ))
    return trend


def summarize(complaints: List[Complaint], total_students: int, days: int = 7,
              today: Optional[date] = None) -> ReportSummary:
    """
    Reduce the complaint list into every figure the reports page shows
    """
    today = today or datetime.utcnow().date()
    total = len(complaints)

    by_status = Counter(c.status for c in complaints)
    by_priority = Counter(c.priority for c in complaints)
    by_category = Counter(category_name(c) for c in complaints)

    resolved = [c for c in complaints if c.status == ComplaintStatus.RESOLVED and c.resolved_at]
    durations = [resolution_days(c) for c in resolved]
    avg_days = round(sum(durations) / len(durations)) if durations else 0

    per_category = defaultdict(list)
    for c, days_taken in zip(resolved, durations):
        per_category[category_name(c)].append(days_taken)
    resolution_by_category = sorted(
        (CategoryResolutionTime(category=name, avg_days=round(sum(v) / len(v)))
         for name, v in per_category.items()),
        key=lambda r: r.avg_days,
        reverse=True,
    )

    return ReportSummary(
        total_complaints=total,
        total_students=total_students,
        resolution_rate=resolution_rate(by_status[ComplaintStatus.RESOLVED], total),
        avg_resolution_days=avg_days,
        status_counts={s.value: by_status[s] for s in ComplaintStatus},
        priority_counts={p.value: by_priority[p] for p in ComplaintPriority},
        category_counts=[NamedCount(name=name, count=count) for name, count in by_category.most_common()],
        resolution_time_by_category=resolution_by_category,
        trend=build_trend(complaints, days, today),
    )


def _format_date(value: Optional[datetime]) -> str:
    return as_utc(value).strftime(CSV_DATE_FORMAT) if value else ""


def export_csv(complaints: Iterable[Complaint], profiles: Dict[int, Profile]) -> str:
    """
    Text fields are quoted with embedded quotes doubled; numeric fields are bare
    """
    output = io.StringIO()
    writer = csv.writer(output, quoting=csv.QUOTE_NONNUMERIC, lineterminator="\n")
    writer.writerow(CSV_HEADERS)
    for c in complaints:
        owner = profiles.get(c.user_id)
        days_taken = resolution_days(c)
        writer.writerow([
            c.id,
            c.subject or "",
            c.category.name if c.category else "",
            c.status.value,
            c.priority.value,
            owner.full_name if owner else "",
            owner.email if owner else "",
            _format_date(c.created_at),
            _format_date(c.resolved_at),
            days_taken if days_taken is not None else "",
            c.admin_response or "",
        ])
    return output.getvalue()
