from datetime import date, datetime

import pytest
from sqlmodel import Session

from taskfortime.metrics import (
    RedemptionSample,
    TaskSample,
    analytics_ranges,
    approved_percent,
    calculate_kpi,
    consistency_band,
    count_active_days,
    format_minutes,
    is_goal_met,
    momentum_label,
    summarize_analytics,
)
from taskfortime.models import Account, Child, Plan, TaskStatus

TODAY = date(2024, 6, 12)  # a Wednesday
THIS_WEEK = ((date(2024, 6, 9), TODAY), (date(2024, 6, 2), date(2024, 6, 8)))


def sample(task_id, child_id, day, status, minutes=10, hour=9):
    return TaskSample(task_id, child_id, datetime(2024, 6, day, hour), status, minutes)


def two_children():
    children = [Child(id=1, family_id=1, name="Sam"), Child(id=2, family_id=1, name="Alex")]
    samples = [
        sample(1, 1, 10, TaskStatus.approved, 10),
        sample(2, 1, 11, TaskStatus.approved, 20),
        sample(3, 1, 12, TaskStatus.active, 5),
        sample(4, 1, 4, TaskStatus.approved, 10),
        sample(5, 2, 3, TaskStatus.approved, 5, hour=10),
        sample(6, 2, 4, TaskStatus.approved, 5, hour=10),
        sample(7, 2, 11, TaskStatus.ready_for_review, 5, hour=10),
    ]
    redemptions = [
        RedemptionSample(1, datetime(2024, 6, 11, 18), 30),
        RedemptionSample(2, datetime(2024, 6, 5, 18), 90),
    ]
    return children, samples, redemptions


def test_kpi_compares_periods():
    kpi = calculate_kpi(12, 10)
    assert (kpi.delta, kpi.delta_pct, kpi.trend) == (2, 20, "up")
    assert calculate_kpi(3, 4).delta_pct == -25
    assert calculate_kpi(1, 8).delta_pct == -12
    assert calculate_kpi(5, 0).delta_pct == 100
    flat = calculate_kpi(0, 0)
    assert (flat.delta_pct, flat.trend) == (0, "flat")


def test_bands_and_labels():
    assert [consistency_band(days) for days in range(8)] == [
        "red", "red", "yellow", "yellow", "yellow", "green", "green", "green",
    ]
    assert momentum_label(3) == "improving"
    assert momentum_label(0) == "stable"
    assert momentum_label(-1) == "declining"


def test_approved_percent_rounds_half_up():
    assert approved_percent(3, 10) == 30
    assert approved_percent(0, 0) == 0
    assert approved_percent(1, 8) == 13
    assert approved_percent(7, 7) == 100


def test_small_helpers():
    assert count_active_days([datetime(2024, 6, 1, 8), datetime(2024, 6, 1, 20), datetime(2024, 6, 3)]) == 2
    assert is_goal_met(1) and not is_goal_met(2, daily_goal=3)
    assert format_minutes(45) == "45m"
    assert format_minutes(120) == "2h"
    assert format_minutes(135) == "2h 15m"


def test_ranges():
    assert analytics_ranges("this_week", TODAY) == THIS_WEEK
    assert analytics_ranges("last_week", TODAY) == (
        (date(2024, 6, 2), date(2024, 6, 8)),
        (date(2024, 5, 26), date(2024, 6, 1)),
    )
    assert analytics_ranges("last_30_days", TODAY) == (
        (date(2024, 5, 14), TODAY),
        (date(2024, 4, 14), date(2024, 5, 13)),
    )
    assert analytics_ranges("custom", TODAY, date(2024, 6, 1), date(2024, 6, 3)) == (
        (date(2024, 6, 1), date(2024, 6, 3)),
        (date(2024, 5, 29), date(2024, 5, 31)),
    )
    assert analytics_ranges("custom", TODAY) == THIS_WEEK
    with pytest.raises(ValueError, match="end must be on or after start"):
        analytics_ranges("custom", TODAY, date(2024, 6, 3), date(2024, 6, 1))
    with pytest.raises(ValueError):
        analytics_ranges("forever", TODAY)


def test_family_kpis_and_daily_chart():
    children, samples, redemptions = two_children()
    report = summarize_analytics(children, samples, redemptions, *THIS_WEEK, TODAY)

    assert report.kpis["total_tasks"].value == 4
    assert report.kpis["total_tasks"].delta_pct == 33
    assert report.kpis["completed"].delta_pct == -33
    assert report.kpis["time_earned"].trend == "up"
    assert report.kpis["time_redeemed"].delta_pct == -67

    assert [point.day_name for point in report.daily] == ["Thu", "Fri", "Sat", "Sun", "Mon", "Tue", "Wed"]
    assert [point.tasks_completed for point in report.daily] == [0, 0, 0, 0, 1, 1, 0]
    assert report.daily[5].minutes_redeemed == 30


def test_child_rows_and_rankings():
    children, samples, redemptions = two_children()
    report = summarize_analytics(
        children, samples, redemptions, *THIS_WEEK, TODAY, leaderboard_metric="approved_count"
    )
    sam, alex = report.children
    assert (sam.assigned_count, sam.active_count, sam.approved_count) == (3, 1, 2)
    assert sam.completion_rate == 67
    assert (sam.consistency_days_active, sam.consistency_band) == (2, "yellow")
    assert (sam.momentum_delta, sam.momentum_label) == (1, "improving")
    assert (sam.minutes_earned, sam.minutes_redeemed) == (30, 30)

    assert (alex.submitted_count, alex.completion_rate) == (1, 0)
    assert (alex.consistency_band, alex.momentum_label) == ("red", "declining")
    assert alex.minutes_redeemed == 0

    assert [row.name for row in report.leaderboard] == ["Sam", "Alex"]
    assert [row.name for row in report.needs_attention] == ["Alex", "Sam"]


def test_insights_are_capped():
    children, samples, redemptions = two_children()
    report = summarize_analytics(
        children, samples, redemptions, *THIS_WEEK, TODAY, pending_approvals=1
    )
    assert report.insights == [
        "Alex is declining: completed 0 tasks this week vs 2 last week.",
        "Best consistency: Sam (2/7 active days).",
        "Most productive day: Mon (10 minutes earned).",
        "Most time redeemed: Sam (30m).",
        "1 task is waiting for approval.",
        "Missed daily goal: Thu, Fri, Sat, Sun, Wed.",
    ]


def test_selected_child_narrows_kpis_only():
    children, samples, redemptions = two_children()
    report = summarize_analytics(children, samples, redemptions, *THIS_WEEK, TODAY, child_id=2)
    assert report.kpis["total_tasks"].value == 1
    assert report.kpis["time_redeemed"].delta_pct == -100
    assert len(report.children) == 2


def test_unknown_leaderboard_metric():
    children, samples, redemptions = two_children()
    with pytest.raises(ValueError):
        summarize_analytics(children, samples, redemptions, *THIS_WEEK, TODAY, leaderboard_metric="xp")


def test_analytics_route(client, parent, add_child, add_task):
    child_id = add_child("Sam")
    task_id = add_task(child_id, reward_minutes=20)
    client.post(f"/profiles/{child_id}/enter")
    client.post(f"/child/tasks/{task_id}/submit")
    client.post("/child/exit-mode")
    client.post(f"/parent/tasks/{task_id}/approve")

    report = client.get("/parent/analytics").json()["analytics"]
    assert report["kpis"]["completed"]["value"] == 1
    assert report["kpis"]["time_earned"]["value"] == 20
    assert report["daily"][-1]["met_goal"] is True
    row = report["children"][0]
    assert row["name"] == "Sam"
    assert row["consistency_days_active"] == 1
    assert row["consistency_band"] == "red"
    assert "Daily goal met 1/7 days this week." in report["insights"]

    narrowed = client.get("/parent/analytics", params={"range": "last_30_days", "child_id": child_id})
    assert narrowed.json()["analytics"]["kpis"]["total_tasks"]["value"] == 1


def test_analytics_route_rejects_bad_input(client, parent):
    assert client.get("/parent/analytics", params={"range": "forever"}).status_code == 400
    assert client.get("/parent/analytics", params={"leaderboard": "xp"}).status_code == 400
    assert client.get("/parent/analytics", params={"child_id": 999}).status_code == 404


def test_analytics_requires_premium(client, parent, session: Session):
    account = session.get(Account, parent.id)
    account.plan = Plan.free
    account.trial_ends_at = None
    session.add(account)
    session.commit()
    assert client.get("/parent/analytics").status_code == 403
