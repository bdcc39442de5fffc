"""Weekly rule-based family insights, stored once per family and week."""
import logging
from datetime import date
from typing import Optional

from sqlmodel import Session, select

from .metrics import FamilyWeeklyMetrics, family_weekly_metrics
from .models import CoachInsight, Family

logger = logging.getLogger(__name__)

SYSTEM_AUTHOR = "system"


def generate_weekly_insight(metrics: FamilyWeeklyMetrics) -> dict:
    """Pick the single most pressing rule for the week's numbers."""
    if metrics.approval_latency_avg_minutes > 60 and metrics.approvals_count > 0:
        hours = round(metrics.approval_latency_avg_minutes / 60, 1)
        return {
            "title": "Speed Up Task Approvals",
            "observation": (
                f"Tasks waited an average of {hours:g} hours for approval this week."
            ),
            "diagnosis": "Long waits between finishing a task and getting credit weaken the link "
            "between effort and reward.",
            "recommendation": "Review pending approvals at a fixed time each day, or let "
            "routine tasks skip approval.",
            "expected_result": "Children see their time bank grow the same day they finish.",
            "next_check": "Average approval latency",
            "impact_score": min(100, round(metrics.approval_latency_avg_minutes / 10)),
        }

    if metrics.evening_slump_score > 30:
        return {
            "title": "Optimize Evening Task Schedule",
            "observation": (
                f"Evening tasks were approved {round(metrics.evening_slump_score)} points less "
                "often than earlier ones."
            ),
            "diagnosis": "Energy and attention drop late in the day.",
            "recommendation": "Move demanding tasks before 5pm and keep evenings light.",
            "expected_result": "A more even completion rate across the day.",
            "next_check": "Evening slump score",
            "impact_score": min(100, round(metrics.evening_slump_score)),
        }

    if metrics.completion_rate < 0.6 and metrics.tasks_assigned_count > 0:
        percent = round(metrics.completion_rate * 100)
        return {
            "title": "Build Momentum with Smaller Wins",
            "observation": f"Only {percent}% of assigned tasks were approved this week.",
            "diagnosis": "The task list may be too long or the steps too large.",
            "recommendation": "Split big tasks into smaller ones and assign fewer per day.",
            "expected_result": "More tasks finished and a growing sense of progress.",
            "next_check": "Weekly completion rate",
            "impact_score": min(100, round((1 - metrics.completion_rate) * 100)),
        }

    percent = round(metrics.completion_rate * 100)
    return {
        "title": "Keep Up the Great Work",
        "observation": f"{percent}% of assigned tasks were approved this week.",
        "diagnosis": "Routines and rewards are working for your family.",
        "recommendation": "Keep the current routine and celebrate the streak together.",
        "expected_result": "Steady completion rates week over week.",
        "next_check": "Weekly completion rate",
        "impact_score": round(metrics.completion_rate * 50),
    }


def store_family_insight(
    session: Session, family: Family, week_start: date
) -> Optional[CoachInsight]:
    existing = session.exec(
        select(CoachInsight).where(
            CoachInsight.family_id == family.id,
            CoachInsight.week_start == week_start,
            CoachInsight.scope == "family",
            CoachInsight.created_by == SYSTEM_AUTHOR,
        )
    ).first()
    if existing:
        return None
    metrics = family_weekly_metrics(session, family.id, week_start, family.timezone)
    if metrics.tasks_assigned_count == 0:
        return None
    insight = CoachInsight(
        family_id=family.id,
        week_start=week_start,
        created_by=SYSTEM_AUTHOR,
        source_metrics=metrics.as_dict(),
        **generate_weekly_insight(metrics),
    )
    session.add(insight)
    session.commit()
    session.refresh(insight)
    return insight


def store_weekly_insights(session: Session, week_start: date) -> dict:
    stored = 0
    skipped = 0
    failed = 0
    for family in session.exec(select(Family)).all():
        try:
            insight = store_family_insight(session, family, week_start)
        except Exception:
            session.rollback()
            logger.exception("Weekly insight failed for family %s", family.id)
            failed += 1
            continue
        if insight is None:
            skipped += 1
        else:
            stored += 1
    logger.info(
        "Weekly insights for %s: stored=%s skipped=%s failed=%s",
        week_start,
        stored,
        skipped,
        failed,
    )
    return {"week_start": week_start.isoformat(), "stored": stored, "skipped": skipped, "failed": failed}
