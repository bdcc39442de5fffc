import httpx
import pytest
from sqlmodel import Session, select

from taskfortime.errors import InvalidTransitionError
from taskfortime.ledger import get_balance
from taskfortime.main import app
from taskfortime.models import (
    AssignedTask,
    Child,
    LedgerEntry,
    TaskEvent,
    TaskEventType,
    TaskStatus,
    TransactionType,
    level_for_xp,
)
from taskfortime.notifications import get_email_dispatcher
from taskfortime.tasks import SubmitOutcome, approve_task, assign_task, submit_task


def test_level_formula():
    assert level_for_xp(0) == 1
    assert level_for_xp(99) == 1
    assert level_for_xp(100) == 2
    assert level_for_xp(105) == 2
    assert level_for_xp(250) == 3


def test_submit_is_idempotent(client, parent, add_child, add_task, session: Session):
    child_id = add_child("Sam")
    task_id = add_task(child_id)
    client.post(f"/profiles/{child_id}/enter")

    first = client.post(f"/child/tasks/{task_id}/submit", follow_redirects=False)
    second = client.post(f"/child/tasks/{task_id}/submit", follow_redirects=False)
    assert first.headers["location"] == second.headers["location"] == f"/child/task-complete/{task_id}"

    task = session.get(AssignedTask, task_id)
    assert task.status == TaskStatus.ready_for_review
    events = session.exec(
        select(TaskEvent).where(TaskEvent.event_type == TaskEventType.completed)
    ).all()
    assert len(events) == 1

    page = client.get(f"/child/task-complete/{task_id}").json()
    assert page["waiting_for_approval"] is True


def test_submit_of_another_childs_task_goes_home(client, parent, add_child, add_task, session: Session):
    sam = add_child("Sam")
    alex = add_child("Alex")
    task_id = add_task(alex)
    client.post(f"/profiles/{sam}/enter")

    resp = client.post(f"/child/tasks/{task_id}/submit", follow_redirects=False)
    assert resp.headers["location"] == "/child/dashboard"
    assert session.get(AssignedTask, task_id).status == TaskStatus.active


def test_submit_outcomes_at_the_core(session: Session, child):
    task = assign_task(session, child, title="Feed cat", reward_minutes=5)
    outcome, _ = submit_task(session, child, task.id)
    assert outcome == SubmitOutcome.submitted
    outcome, task = submit_task(session, child, task.id)
    assert outcome == SubmitOutcome.already_submitted
    assert task.status == TaskStatus.ready_for_review


def test_approval_credits_minutes_xp_and_level(client, parent, add_child, add_task, session: Session):
    child_id = add_child("Sam")
    child = session.get(Child, child_id)
    child.xp = 95
    session.add(child)
    session.commit()

    task_id = add_task(child_id, reward_minutes=15)
    client.post(f"/profiles/{child_id}/enter")
    client.post(f"/child/tasks/{task_id}/submit")
    client.post("/child/exit-mode")

    resp = client.post(f"/parent/tasks/{task_id}/approve", follow_redirects=False)
    assert resp.status_code == 303

    session.expire_all()
    child = session.get(Child, child_id)
    assert child.xp == 105
    assert child.level == 2
    assert get_balance(session, child_id) == 15
    entries = session.exec(select(LedgerEntry).where(LedgerEntry.child_id == child_id)).all()
    assert [(e.delta, e.transaction_type) for e in entries] == [(15, TransactionType.task_reward)]
    assert session.get(AssignedTask, task_id).status == TaskStatus.approved


def test_second_approval_conflicts(client, parent, add_child, add_task, session: Session):
    child_id = add_child("Sam")
    task_id = add_task(child_id, reward_minutes=10)
    client.post(f"/profiles/{child_id}/enter")
    client.post(f"/child/tasks/{task_id}/submit")
    client.post("/child/exit-mode")

    client.post(f"/parent/tasks/{task_id}/approve")
    again = client.post(f"/parent/tasks/{task_id}/approve", follow_redirects=False)
    assert again.status_code == 409
    assert again.json()["detail"] == "This task was already handled"
    assert get_balance(session, child_id) == 10


def test_approving_an_unsubmitted_task_conflicts(client, parent, add_child, add_task):
    child_id = add_child("Sam")
    task_id = add_task(child_id)
    resp = client.post(f"/parent/tasks/{task_id}/approve", follow_redirects=False)
    assert resp.status_code == 409


def test_failed_approval_leaves_no_trace(session: Session, child, monkeypatch):
    task = assign_task(session, child, title="Dishes", reward_minutes=20)
    submit_task(session, child, task.id)

    def broken(*args, **kwargs):
        raise RuntimeError("ledger unavailable")

    monkeypatch.setattr("taskfortime.tasks.append_entry", broken)
    with pytest.raises(RuntimeError):
        approve_task(session, child.family_id, task.id)

    session.expire_all()
    assert session.get(AssignedTask, task.id).status == TaskStatus.ready_for_review
    assert session.get(Child, child.id).xp == 0
    assert session.exec(select(LedgerEntry)).all() == []
    approved_events = session.exec(
        select(TaskEvent).where(TaskEvent.event_type == TaskEventType.approved)
    ).all()
    assert approved_events == []


def test_reject_then_resubmit(client, parent, add_child, add_task, session: Session):
    child_id = add_child("Sam")
    task_id = add_task(child_id)
    client.post(f"/profiles/{child_id}/enter")
    client.post(f"/child/tasks/{task_id}/submit")
    client.post("/child/exit-mode")

    client.post(f"/parent/tasks/{task_id}/reject", data={"note": "Corners are still messy"})
    session.expire_all()
    assert session.get(AssignedTask, task_id).status == TaskStatus.rejected
    assert session.exec(select(LedgerEntry)).all() == []
    rejected = session.exec(
        select(TaskEvent).where(TaskEvent.event_type == TaskEventType.rejected)
    ).one()
    assert rejected.note == "Corners are still messy"

    client.post(f"/profiles/{child_id}/enter")
    client.post(f"/child/tasks/{task_id}/submit")
    session.expire_all()
    assert session.get(AssignedTask, task_id).status == TaskStatus.ready_for_review


def test_bulk_approve_reports_each_task(client, parent, add_child, add_task, session: Session):
    child_id = add_child("Sam")
    done = add_task(child_id, title="Bed", reward_minutes=5)
    pending = add_task(child_id, title="Teeth", reward_minutes=5)
    client.post(f"/profiles/{child_id}/enter")
    client.post(f"/child/tasks/{done}/submit")
    client.post("/child/exit-mode")

    client.post("/parent/tasks/approve-bulk", data={"task_ids": [done, pending]})
    session.expire_all()
    assert session.get(AssignedTask, done).status == TaskStatus.approved
    assert session.get(AssignedTask, pending).status == TaskStatus.active
    assert get_balance(session, child_id) == 5


def test_deleted_task_disappears_from_lists(client, parent, add_child, add_task):
    child_id = add_child("Sam")
    task_id = add_task(child_id)
    client.post(f"/parent/tasks/{task_id}/delete")
    assert client.get("/parent/tasks").json()["tasks"] == []
    assert client.get(f"/parent/tasks/{task_id}").status_code == 404


def test_template_assignment(client, parent, add_child, session: Session):
    child_id = add_child("Sam")
    client.post(
        "/parent/templates",
        data={"title": "Homework", "reward_minutes": 30, "category": "school"},
    )
    template_id = client.get("/parent/templates").json()["templates"][0]["id"]
    resp = client.post(
        f"/parent/templates/{template_id}/assign",
        data={"child_id": child_id},
        follow_redirects=False,
    )
    task_id = int(resp.headers["location"].split("/")[-1])
    task = session.get(AssignedTask, task_id)
    assert task.template_id == template_id
    assert task.reward_minutes == 30
    assert task.category == "school"


def test_submission_emails_parents(client, parent, add_child, add_task, dispatcher):
    child_id = add_child("Sam")
    task_id = add_task(child_id, title="Walk dog")
    client.post(f"/profiles/{child_id}/enter")
    client.post(f"/child/tasks/{task_id}/submit")
    client.post(f"/child/tasks/{task_id}/submit")

    assert len(dispatcher.sent) == 1
    recipient, kind, params = dispatcher.sent[0]
    assert recipient == "pat@example.com"
    assert kind == "task_submitted"
    assert params["task_title"] == "Walk dog"
    assert params["approve_url"] == "http://testserver/parent/approvals"


def test_email_failure_does_not_block_submission(
    client, parent, add_child, add_task, session: Session, monkeypatch
):
    class DownDispatcher:
        def send(self, recipient, kind, params):
            raise httpx.ConnectError("email provider unreachable")

    monkeypatch.setitem(app.dependency_overrides, get_email_dispatcher, DownDispatcher)
    child_id = add_child("Sam")
    task_id = add_task(child_id)
    client.post(f"/profiles/{child_id}/enter")

    resp = client.post(f"/child/tasks/{task_id}/submit", follow_redirects=False)
    assert resp.status_code == 303
    assert session.get(AssignedTask, task_id).status == TaskStatus.ready_for_review


def test_no_email_when_parent_opted_out(client, parent, add_child, add_task, dispatcher):
    client.post("/settings/notifications", data={"notify_daily_summary": "on"})
    child_id = add_child("Sam")
    task_id = add_task(child_id)
    client.post(f"/profiles/{child_id}/enter")
    client.post(f"/child/tasks/{task_id}/submit")
    assert dispatcher.sent == []


def test_invalid_transition_error_message():
    assert str(InvalidTransitionError()) == "This task was already handled"
