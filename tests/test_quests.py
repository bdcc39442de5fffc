from datetime import date, datetime, timedelta

import pytest
from sqlmodel import Session

from taskfortime.models import AssignedTask, Child, FamilyQuest, QuestStatus, TaskStatus, utcnow
from taskfortime.quests import (
    QuestProgress,
    celebrate_if_met,
    celebration_edge,
    create_quest,
    quest_progress,
    read_quest,
    summarize_quest,
)
from taskfortime.tasks import assign_task, submit_task


def today():
    return utcnow().date()


def make_quest(session, family_id, target=50.0, start=None, end=None):
    return create_quest(
        session,
        family_id,
        title="Tidy week",
        target_completion_rate=target,
        start_date=start or today() - timedelta(days=1),
        end_date=end or today() + timedelta(days=1),
        reward_description="Pizza night",
    )


def test_window_includes_the_whole_end_day():
    quest = FamilyQuest(
        id=1,
        family_id=1,
        title="Weekend",
        target_completion_rate=50,
        start_date=date(2024, 6, 1),
        end_date=date(2024, 6, 2),
    )
    child = Child(id=1, family_id=1, name="Sam")
    late = AssignedTask(
        id=1,
        family_id=1,
        child_id=1,
        title="Late chore",
        status=TaskStatus.approved,
        created_at=datetime(2024, 6, 2, 23, 30),
    )
    outside = AssignedTask(
        id=2,
        family_id=1,
        child_id=1,
        title="Monday chore",
        created_at=datetime(2024, 6, 3, 0, 0, 1),
    )
    progress = summarize_quest(quest, [child], [late, outside])
    assert progress.total_assigned == 1
    assert progress.total_completed == 1
    assert progress.current_completion_rate == 100
    assert progress.is_met


def test_quest_hidden_without_live_tasks(session: Session, family, child):
    quest = make_quest(session, family.id)
    assert quest_progress(session, quest) is None
    assert read_quest(session, family.id) is None


def test_quest_hidden_when_children_are_deleted(session: Session, family, child):
    make_quest(session, family.id)
    assign_task(session, child, title="Dishes", reward_minutes=5)
    child.deleted_at = utcnow()
    session.add(child)
    session.commit()
    assert read_quest(session, family.id) is None


def test_progress_counts_submitted_and_approved(session: Session, family, child):
    quest = make_quest(session, family.id, target=50)
    first = assign_task(session, child, title="Dishes", reward_minutes=5)
    assign_task(session, child, title="Laundry", reward_minutes=5)
    assign_task(session, child, title="Trash", reward_minutes=5)

    progress = quest_progress(session, quest)
    assert progress.total_assigned == 3
    assert progress.current_completion_rate == 0
    assert not progress.is_met

    submit_task(session, child, first.id)
    progress = quest_progress(session, quest)
    assert progress.total_completed == 1
    assert round(progress.current_completion_rate, 1) == 33.3


def test_celebration_fires_exactly_once(session: Session, family, child):
    quest = make_quest(session, family.id, target=50)
    task = assign_task(session, child, title="Dishes", reward_minutes=5)
    submit_task(session, child, task.id)

    first = read_quest(session, family.id)
    assert first["celebrate"] is True
    assert first["quest"]["status"] == QuestStatus.completed.value

    second = read_quest(session, family.id)
    assert second["celebrate"] is False
    assert second["progress"]["is_met"] is True

    session.refresh(quest)
    assert quest.completed_at is not None
    assert celebrate_if_met(session, quest, quest_progress(session, quest)) is False


def test_celebration_edge():
    def progress(met):
        return QuestProgress(1, 4, 2 if met else 1, 50.0 if met else 25.0, 50.0, met)

    assert celebration_edge(None, progress(True))
    assert celebration_edge(progress(False), progress(True))
    assert not celebration_edge(progress(True), progress(True))
    assert not celebration_edge(progress(True), progress(False))
    assert not celebration_edge(progress(False), None)


def test_quest_must_end_after_start(session: Session, family):
    with pytest.raises(ValueError, match="end on or after"):
        make_quest(session, family.id, start=today(), end=today() - timedelta(days=1))


def test_child_quest_route(client, parent, add_child, add_task):
    child_id = add_child("Sam")
    client.post(
        "/parent/quests",
        data={
            "title": "Tidy week",
            "target_completion_rate": 100,
            "start_date": today().isoformat(),
            "end_date": today().isoformat(),
        },
    )
    client.post(f"/profiles/{child_id}/enter")
    assert client.get("/child/quest").json() == {"quest": None}

    client.post("/child/exit-mode")
    task_id = add_task(child_id)
    client.post(f"/profiles/{child_id}/enter")
    body = client.get("/child/quest").json()
    assert body["quest"]["title"] == "Tidy week"
    assert body["progress"]["total_assigned"] == 1

    client.post(f"/child/tasks/{task_id}/submit")
    body = client.get("/child/quest").json()
    assert body["celebrate"] is True
    assert client.get("/child/quest").json()["celebrate"] is False


def test_cancelled_quest_is_not_current(client, parent, add_child, add_task, session: Session):
    child_id = add_child("Sam")
    add_task(child_id)
    client.post(
        "/parent/quests",
        data={
            "title": "Reading",
            "target_completion_rate": 80,
            "start_date": today().isoformat(),
            "end_date": today().isoformat(),
        },
    )
    quest_id = client.get("/parent/quests").json()["quests"][0]["id"]
    client.post(f"/parent/quests/{quest_id}/cancel")
    quests = client.get("/parent/quests").json()
    assert quests["quests"][0]["status"] == "cancelled"
    assert quests["current"] is None
