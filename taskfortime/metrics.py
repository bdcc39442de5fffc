"""Read-side metrics over stored task and approval data.

Everything here is a pure function of the rows it reads: identical data gives
identical numbers.
"""
from __future__ import annotations

import logging
import math
from dataclasses import asdict, dataclass
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from statistics import median
from typing import Dict, Iterable, List, Optional, Sequence, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy import func
from sqlmodel import Session, select

from .models import (
    COMPLETED_STATUSES,
    AssignedTask,
    Child,
    RewardRedemption,
    TaskEvent,
    TaskEventType,
    TaskStatus,
)

logger = logging.getLogger(__name__)

EVENING_CUTOFF_HOUR = 19
WEEKLY_EVENING_HOUR = 17


@dataclass(frozen=True)
class TaskSample:
    task_id: int
    child_id: int
    created_at: datetime  # family-local
    status: TaskStatus
    reward_minutes: int = 0
    completed_at: Optional[datetime] = None
    approved_at: Optional[datetime] = None

    @property
    def is_completed(self) -> bool:
        return self.status in COMPLETED_STATUSES

    @property
    def approval_latency_minutes(self) -> Optional[float]:
        if not self.completed_at or not self.approved_at:
            return None
        latency = (self.approved_at - self.completed_at).total_seconds() / 60
        return latency if latency > 0 else None


@dataclass(frozen=True)
class SignalInputs:
    tasks_considered: int
    daytime_rate: Optional[float]
    evening_rate: Optional[float]
    approval_latency_median: Optional[float]
    today_count: int
    median_daily_count: Optional[float]
    weekday_rate: Optional[float]
    weekend_rate: Optional[float]

    def as_dict(self) -> dict:
        return asdict(self)


def family_zone(name: Optional[str]) -> tzinfo:
    if not name or name.upper() == "UTC":
        return timezone.utc
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown family timezone %r, using UTC", name)
        return timezone.utc


def check_zone(name: str):
    if name.upper() == "UTC":
        return
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValueError(f"Unknown timezone: {name}") from exc


def to_local(value: datetime, zone: tzinfo) -> datetime:
    return value.replace(tzinfo=timezone.utc).astimezone(zone).replace(tzinfo=None)


def completion_rate(samples: Iterable[TaskSample]) -> Optional[float]:
    samples = list(samples)
    if not samples:
        return None
    done = sum(1 for sample in samples if sample.is_completed)
    return done / len(samples) * 100


def load_task_samples(
    session: Session,
    family_id: int,
    start: datetime,
    end: datetime,
    *,
    child_id: Optional[int] = None,
    tz: Optional[str] = None,
) -> List[TaskSample]:
    """Live tasks of live children created in ``[start, end)`` (UTC)."""
    zone = family_zone(tz)
    statement = (
        select(AssignedTask)
        .join(Child, Child.id == AssignedTask.child_id)
        .where(
            AssignedTask.family_id == family_id,
            AssignedTask.deleted_at.is_(None),
            Child.deleted_at.is_(None),
            AssignedTask.created_at >= start,
            AssignedTask.created_at < end,
        )
        .order_by(AssignedTask.created_at, AssignedTask.id)
    )
    if child_id is not None:
        statement = statement.where(AssignedTask.child_id == child_id)
    tasks = session.exec(statement).all()
    if not tasks:
        return []

    events = session.exec(
        select(TaskEvent)
        .where(
            TaskEvent.assigned_task_id.in_([task.id for task in tasks]),
            TaskEvent.event_type.in_([TaskEventType.completed, TaskEventType.approved]),
        )
        .order_by(TaskEvent.created_at, TaskEvent.id)
    ).all()
    completed_at: dict[int, datetime] = {}
    approved_at: dict[int, datetime] = {}
    for event in events:
        if event.event_type == TaskEventType.completed:
            completed_at[event.assigned_task_id] = event.created_at
        elif event.assigned_task_id not in approved_at:
            approved_at[event.assigned_task_id] = event.created_at

    samples = []
    for task in tasks:
        approved = approved_at.get(task.id)
        completed = completed_at.get(task.id)
        if approved and completed and completed > approved:
            completed = None
        samples.append(
            TaskSample(
                task_id=task.id,
                child_id=task.child_id,
                created_at=to_local(task.created_at, zone),
                status=task.status,
                reward_minutes=task.reward_minutes,
                completed_at=completed,
                approved_at=approved,
            )
        )
    return samples


def compute_signal_inputs(samples: Iterable[TaskSample], today: date) -> SignalInputs:
    samples = list(samples)

    daytime = [s for s in samples if s.created_at.hour < EVENING_CUTOFF_HOUR]
    evening = [s for s in samples if s.created_at.hour >= EVENING_CUTOFF_HOUR]
    weekday = [s for s in samples if s.created_at.weekday() < 5]
    weekend = [s for s in samples if s.created_at.weekday() >= 5]

    latencies = [s.approval_latency_minutes for s in samples]
    latencies = [value for value in latencies if value is not None]

    per_day: dict[date, int] = {}
    for sample in samples:
        day = sample.created_at.date()
        per_day[day] = per_day.get(day, 0) + 1
    history = [count for day, count in per_day.items() if day < today]

    return SignalInputs(
        tasks_considered=len(samples),
        daytime_rate=completion_rate(daytime),
        evening_rate=completion_rate(evening),
        approval_latency_median=median(latencies) if latencies else None,
        today_count=per_day.get(today, 0),
        median_daily_count=median(history) if history else None,
        weekday_rate=completion_rate(weekday),
        weekend_rate=completion_rate(weekend),
    )


def window_bounds(now: datetime, lookback_days: int) -> tuple[datetime, datetime]:
    return now - timedelta(days=lookback_days), now + timedelta(microseconds=1)


@dataclass(frozen=True)
class OutcomeMetrics:
    child_id: int
    start_date: date
    end_date: date
    tasks_assigned: int
    tasks_completed: int
    tasks_approved: int
    completion_rate: float
    approval_latency_avg_minutes: Optional[float]
    approval_latency_median_minutes: Optional[float]
    minutes_earned: int

    def as_dict(self) -> dict:
        data = asdict(self)
        data["start_date"] = self.start_date.isoformat()
        data["end_date"] = self.end_date.isoformat()
        return data


def summarize_outcome(
    samples: Iterable[TaskSample], child_id: int, start_date: date, end_date: date
) -> OutcomeMetrics:
    samples = list(samples)
    latencies = [s.approval_latency_minutes for s in samples]
    latencies = [value for value in latencies if value is not None]
    approved = [s for s in samples if s.status == TaskStatus.approved]
    return OutcomeMetrics(
        child_id=child_id,
        start_date=start_date,
        end_date=end_date,
        tasks_assigned=len(samples),
        tasks_completed=sum(1 for s in samples if s.is_completed),
        tasks_approved=len(approved),
        completion_rate=completion_rate(samples) or 0.0,
        approval_latency_avg_minutes=sum(latencies) / len(latencies) if latencies else None,
        approval_latency_median_minutes=median(latencies) if latencies else None,
        minutes_earned=sum(s.reward_minutes for s in approved),
    )


def compute_outcome_metrics(
    session: Session,
    family_id: int,
    child_id: int,
    start_date: date,
    end_date: date,
    tz: Optional[str] = None,
) -> OutcomeMetrics:
    start = datetime.combine(start_date, time.min)
    end = datetime.combine(end_date + timedelta(days=1), time.min)
    samples = load_task_samples(session, family_id, start, end, child_id=child_id, tz=tz)
    return summarize_outcome(samples, child_id, start_date, end_date)


def week_start_for(day: date) -> date:
    return day - timedelta(days=day.weekday())


@dataclass(frozen=True)
class FamilyWeeklyMetrics:
    tasks_assigned_count: int
    tasks_completed_count: int
    completion_rate: float
    approval_latency_avg_minutes: float
    approvals_count: int
    evening_slump_score: float

    def as_dict(self) -> dict:
        return asdict(self)


def summarize_week(samples: Iterable[TaskSample]) -> FamilyWeeklyMetrics:
    """Weekly family numbers; rates are 0-1 and approval-based."""
    samples = list(samples)
    approved = [s for s in samples if s.status == TaskStatus.approved]
    latencies = [s.approval_latency_minutes for s in samples]
    latencies = [value for value in latencies if value is not None]

    def approved_rate(group):
        return sum(1 for s in group if s.status == TaskStatus.approved) / len(group) if group else 0

    earlier = [s for s in samples if s.created_at.hour < WEEKLY_EVENING_HOUR]
    evening = [s for s in samples if s.created_at.hour >= WEEKLY_EVENING_HOUR]
    slump = 0.0
    if earlier and evening:
        slump = max(0.0, min(100.0, (approved_rate(earlier) - approved_rate(evening)) * 100))

    return FamilyWeeklyMetrics(
        tasks_assigned_count=len(samples),
        tasks_completed_count=len(approved),
        completion_rate=len(approved) / len(samples) if samples else 0.0,
        approval_latency_avg_minutes=sum(latencies) / len(latencies) if latencies else 0.0,
        approvals_count=sum(1 for s in samples if s.approved_at is not None),
        evening_slump_score=slump,
    )


def family_weekly_metrics(
    session: Session, family_id: int, week_start: date, tz: Optional[str] = None
) -> FamilyWeeklyMetrics:
    start = datetime.combine(week_start, time.min)
    samples = load_task_samples(session, family_id, start, start + timedelta(days=7), tz=tz)
    return summarize_week(samples)


# -- parent analytics ----------------------------------------------------------
#
# Period KPIs compare the selected range with the one right before it. Weeks
# start on Sunday. Consistency and momentum always look at the last 7 and the
# prior 7 days, whatever range is selected.

DAILY_TASK_GOAL = 1
MAX_ANALYTICS_INSIGHTS = 6
ANALYTICS_RANGES = ("this_week", "last_week", "last_30_days", "custom")
LEADERBOARD_METRICS = ("minutes_earned", "approved_count", "consistency_days_active")
KPI_NAMES = ("total_tasks", "completed", "time_earned", "time_redeemed")
DAY_NAMES = ("Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun")
BAND_ORDER = {"red": 0, "yellow": 1, "green": 2}
MOMENTUM_ORDER = {"declining": 0, "stable": 1, "improving": 2}

DateRange = Tuple[date, date]


def round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


@dataclass(frozen=True)
class KPI:
    value: int
    prev_value: int
    delta: int
    delta_pct: int
    trend: str


def calculate_kpi(current: int, previous: int) -> KPI:
    delta = current - previous
    if previous > 0:
        delta_pct = round_half_up(delta / previous * 100)
    else:
        delta_pct = 100 if current > 0 else 0
    trend = "up" if delta > 0 else "down" if delta < 0 else "flat"
    return KPI(current, previous, delta, delta_pct, trend)


def consistency_band(days_active: int) -> str:
    if days_active >= 5:
        return "green"
    if days_active >= 2:
        return "yellow"
    return "red"


def momentum_label(delta: int) -> str:
    if delta > 0:
        return "improving"
    if delta < 0:
        return "declining"
    return "stable"


def approved_percent(approved: int, assigned: int) -> int:
    if assigned == 0:
        return 0
    return round_half_up(approved / assigned * 100)


def count_active_days(moments: Iterable[datetime]) -> int:
    return len({moment.date() for moment in moments})


def is_goal_met(tasks_completed: int, daily_goal: int = DAILY_TASK_GOAL) -> bool:
    return tasks_completed >= daily_goal


def format_minutes(minutes: int) -> str:
    if minutes < 60:
        return f"{minutes}m"
    hours, rest = divmod(minutes, 60)
    return f"{hours}h {rest}m" if rest else f"{hours}h"


def analytics_ranges(
    name: str, today: date, start: Optional[date] = None, end: Optional[date] = None
) -> Tuple[DateRange, DateRange]:
    """Current and previous periods as inclusive local dates.

    ``custom`` without both dates falls back to ``this_week``.
    """
    if name not in ANALYTICS_RANGES:
        raise ValueError(f"Unknown range: {name}")
    if name == "custom" and start and end:
        if end < start:
            raise ValueError("end must be on or after start")
        length = (end - start).days + 1
        return (start, end), (start - timedelta(days=length), start - timedelta(days=1))

    since_sunday = (today.weekday() + 1) % 7
    if name == "last_week":
        current_end = today - timedelta(days=since_sunday + 1)
        current, length = (current_end - timedelta(days=6), current_end), 7
    elif name == "last_30_days":
        current, length = (today - timedelta(days=29), today), 30
    else:
        current, length = (today - timedelta(days=since_sunday), today), 7
    previous = (current[0] - timedelta(days=length), current[0] - timedelta(days=1))
    return current, previous


@dataclass(frozen=True)
class RedemptionSample:
    child_id: int
    created_at: datetime  # family-local
    minutes_spent: int


@dataclass(frozen=True)
class ChildAnalytics:
    child_id: int
    name: str
    assigned_count: int
    active_count: int
    submitted_count: int
    approved_count: int
    completion_rate: int
    consistency_days_active: int
    consistency_band: str
    recent_approved: int
    prior_approved: int
    momentum_delta: int
    momentum_label: str
    minutes_earned: int
    minutes_redeemed: int


@dataclass(frozen=True)
class DailyPoint:
    day: date
    day_name: str
    tasks_completed: int
    minutes_earned: int
    minutes_redeemed: int
    met_goal: bool


@dataclass(frozen=True)
class FamilyAnalytics:
    current: DateRange
    previous: DateRange
    kpis: Dict[str, KPI]
    daily: List[DailyPoint]
    children: List[ChildAnalytics]
    leaderboard: List[ChildAnalytics]
    needs_attention: List[ChildAnalytics]
    insights: List[str]

    def as_dict(self) -> dict:
        data = asdict(self)
        for key in ("current", "previous"):
            start, end = data[key]
            data[key] = {"start": start.isoformat(), "end": end.isoformat()}
        for point in data["daily"]:
            point["day"] = point["day"].isoformat()
        return data


def _in_range(moment: datetime, bounds: DateRange) -> bool:
    return bounds[0] <= moment.date() <= bounds[1]


def _is_approved(sample: TaskSample) -> bool:
    return sample.status == TaskStatus.approved


def summarize_child(
    child: Child,
    samples: Sequence[TaskSample],
    redemptions: Sequence[RedemptionSample],
    current: DateRange,
    today: date,
) -> ChildAnalytics:
    own = [s for s in samples if s.child_id == child.id]
    period = [s for s in own if _in_range(s.created_at, current)]
    approved = [s for s in period if _is_approved(s)]

    recent, prior = [], []
    for sample in own:
        if not _is_approved(sample):
            continue
        age = (today - sample.created_at.date()).days
        if 0 <= age < 7:
            recent.append(sample)
        elif 7 <= age < 14:
            prior.append(sample)
    days_active = count_active_days(s.created_at for s in recent)
    delta = len(recent) - len(prior)

    return ChildAnalytics(
        child_id=child.id,
        name=child.name,
        assigned_count=len(period),
        active_count=sum(1 for s in period if s.status == TaskStatus.active),
        submitted_count=sum(1 for s in period if s.status == TaskStatus.ready_for_review),
        approved_count=len(approved),
        completion_rate=approved_percent(len(approved), len(period)),
        consistency_days_active=days_active,
        consistency_band=consistency_band(days_active),
        recent_approved=len(recent),
        prior_approved=len(prior),
        momentum_delta=delta,
        momentum_label=momentum_label(delta),
        minutes_earned=sum(s.reward_minutes for s in approved),
        minutes_redeemed=sum(
            r.minutes_spent
            for r in redemptions
            if r.child_id == child.id and _in_range(r.created_at, current)
        ),
    )


def analytics_insights(
    rows: Sequence[ChildAnalytics], daily: Sequence[DailyPoint], pending_approvals: int
) -> List[str]:
    notes: List[str] = []
    if not rows:
        return notes

    for row in rows:
        if row.momentum_label == "declining":
            plural = "" if row.recent_approved == 1 else "s"
            notes.append(
                f"{row.name} is declining: completed {row.recent_approved} task{plural} "
                f"this week vs {row.prior_approved} last week."
            )

    steady = max(rows, key=lambda row: row.consistency_days_active)
    if steady.consistency_days_active > 0:
        notes.append(
            f"Best consistency: {steady.name} ({steady.consistency_days_active}/7 active days)."
        )

    best_day = max(daily, key=lambda point: point.tasks_completed, default=None)
    if best_day and best_day.tasks_completed > 0:
        notes.append(
            f"Most productive day: {best_day.day_name} ({best_day.minutes_earned} minutes earned)."
        )

    spender = max(rows, key=lambda row: row.minutes_redeemed)
    if spender.minutes_redeemed > 0:
        notes.append(
            f"Most time redeemed: {spender.name} ({format_minutes(spender.minutes_redeemed)})."
        )

    if pending_approvals > 0:
        verb = "task is" if pending_approvals == 1 else "tasks are"
        notes.append(f"{pending_approvals} {verb} waiting for approval.")

    missed = [point.day_name for point in daily if not point.met_goal]
    if 0 < len(missed) < len(daily):
        notes.append(f"Missed daily goal: {', '.join(missed)}.")
    met = len(daily) - len(missed)
    if met > 0:
        notes.append(f"Daily goal met {met}/{len(daily)} days this week.")

    return notes[:MAX_ANALYTICS_INSIGHTS]


def summarize_analytics(
    children: Sequence[Child],
    samples: Sequence[TaskSample],
    redemptions: Sequence[RedemptionSample],
    current: DateRange,
    previous: DateRange,
    today: date,
    *,
    child_id: Optional[int] = None,
    leaderboard_metric: str = "minutes_earned",
    pending_approvals: int = 0,
) -> FamilyAnalytics:
    """KPIs and the daily chart follow ``child_id``; per-child rows cover everyone."""
    if leaderboard_metric not in LEADERBOARD_METRICS:
        raise ValueError(f"Unknown leaderboard metric: {leaderboard_metric}")
    picked = [s for s in samples if child_id is None or s.child_id == child_id]
    spent = [r for r in redemptions if child_id is None or r.child_id == child_id]

    def totals(bounds: DateRange):
        assigned = [s for s in picked if _in_range(s.created_at, bounds)]
        approved = [s for s in assigned if _is_approved(s)]
        redeemed = sum(r.minutes_spent for r in spent if _in_range(r.created_at, bounds))
        return len(assigned), len(approved), sum(s.reward_minutes for s in approved), redeemed

    kpis = {
        name: calculate_kpi(now, before)
        for name, now, before in zip(KPI_NAMES, totals(current), totals(previous))
    }

    daily = []
    for offset in range(6, -1, -1):
        day = current[1] - timedelta(days=offset)
        approved = [s for s in picked if _is_approved(s) and s.created_at.date() == day]
        daily.append(
            DailyPoint(
                day=day,
                day_name=DAY_NAMES[day.weekday()],
                tasks_completed=len(approved),
                minutes_earned=sum(s.reward_minutes for s in approved),
                minutes_redeemed=sum(r.minutes_spent for r in spent if r.created_at.date() == day),
                met_goal=is_goal_met(len(approved)),
            )
        )

    rows = [summarize_child(child, samples, redemptions, current, today) for child in children]
    leaderboard = sorted(rows, key=lambda row: getattr(row, leaderboard_metric), reverse=True)
    needs_attention = sorted(
        rows,
        key=lambda row: (BAND_ORDER[row.consistency_band], MOMENTUM_ORDER[row.momentum_label]),
    )
    return FamilyAnalytics(
        current=current,
        previous=previous,
        kpis=kpis,
        daily=daily,
        children=rows,
        leaderboard=leaderboard,
        needs_attention=needs_attention,
        insights=analytics_insights(rows, daily, pending_approvals),
    )


def load_redemptions(
    session: Session, family_id: int, start: datetime, end: datetime, tz: Optional[str] = None
) -> List[RedemptionSample]:
    zone = family_zone(tz)
    rows = session.exec(
        select(RewardRedemption)
        .join(Child, Child.id == RewardRedemption.child_id)
        .where(
            RewardRedemption.family_id == family_id,
            Child.deleted_at.is_(None),
            RewardRedemption.created_at >= start,
            RewardRedemption.created_at < end,
        )
    ).all()
    return [
        RedemptionSample(row.child_id, to_local(row.created_at, zone), row.minutes_spent)
        for row in rows
    ]


def compute_family_analytics(
    session: Session,
    family_id: int,
    today: date,
    range_name: str = "this_week",
    *,
    start: Optional[date] = None,
    end: Optional[date] = None,
    child_id: Optional[int] = None,
    leaderboard_metric: str = "minutes_earned",
    tz: Optional[str] = None,
) -> FamilyAnalytics:
    current, previous = analytics_ranges(range_name, today, start, end)
    first = min(previous[0], current[1] - timedelta(days=6), today - timedelta(days=13))
    last = max(current[1], today)
    # a day of slack on each side covers any UTC offset
    lower = datetime.combine(first - timedelta(days=1), time.min)
    upper = datetime.combine(last + timedelta(days=2), time.min)

    samples = load_task_samples(session, family_id, lower, upper, tz=tz)
    redemptions = load_redemptions(session, family_id, lower, upper, tz=tz)
    children = session.exec(
        select(Child)
        .where(Child.family_id == family_id, Child.deleted_at.is_(None))
        .order_by(Child.created_at, Child.id)
    ).all()
    pending = session.exec(
        select(func.count())
        .select_from(AssignedTask)
        .join(Child, Child.id == AssignedTask.child_id)
        .where(
            AssignedTask.family_id == family_id,
            AssignedTask.status == TaskStatus.ready_for_review,
            AssignedTask.deleted_at.is_(None),
            Child.deleted_at.is_(None),
        )
    ).one()
    return summarize_analytics(
        children,
        samples,
        redemptions,
        current,
        previous,
        today,
        child_id=child_id,
        leaderboard_metric=leaderboard_metric,
        pending_approvals=pending,
    )
