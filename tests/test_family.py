import inspect

from fastapi.routing import APIRoute
from sqlmodel import Session

from taskfortime.main import app
from taskfortime.models import Family


def test_family_timezone_is_validated(client, parent, session: Session):
    bad = client.post("/settings/family", data={"timezone": "Mars/Olympus"}, follow_redirects=False)
    assert bad.status_code == 400
    assert "Unknown timezone" in bad.json()["detail"]

    client.post("/settings/family", data={"name": "Rivera-Cho", "timezone": "America/Chicago"})
    family = session.get(Family, parent.family_id)
    assert family.name == "Rivera-Cho"
    assert family.timezone == "America/Chicago"


def test_removed_child_leaves_the_picker(client, parent, add_child):
    sam = add_child("Sam")
    add_child("Alex")
    client.post(f"/parent/children/{sam}/delete")
    names = [c["name"] for c in client.get("/choose-profile").json()["children"]]
    assert names == ["Alex"]
    assert client.get(f"/parent/children/{sam}").status_code == 404


def test_children_of_other_families_are_invisible(client, parent, add_child):
    child_id = add_child("Sam")
    client.post("/logout")
    client.post(
        "/register",
        data={"display_name": "Lee", "email": "lee@example.com", "password": "secret123"},
    )
    assert client.get(f"/parent/children/{child_id}").status_code == 404
    assert client.post(f"/profiles/{child_id}/enter").status_code == 404


def test_bonus_and_ledger_view(client, parent, add_child):
    child_id = add_child("Sam")
    client.post(f"/parent/children/{child_id}/bonus", data={"minutes": 20, "reason": "Good sport"})
    client.post(f"/parent/children/{child_id}/stars", data={"stars": 3})

    detail = client.get(f"/parent/children/{child_id}").json()
    assert detail["child"]["minutes"] == 20
    assert detail["child"]["stars"] == 3
    assert detail["child"]["xp"] == 5

    ledger = client.get(f"/parent/ledger/{child_id}", params={"unit": "minutes"}).json()
    assert [e["reason"] for e in ledger["entries"]] == ["Good sport"]
    assert ledger["family_minutes"] == {str(child_id): 20}

    client.post(f"/parent/children/{child_id}/stars/reset")
    assert client.get(f"/parent/children/{child_id}").json()["child"]["stars"] == 0


def test_reward_toggle_hides_it_from_children(client, parent, add_child):
    child_id = add_child("Sam")
    client.post("/parent/rewards", data={"title": "Park trip", "cost_minutes": 30})
    reward_id = client.get("/parent/rewards").json()["rewards"][0]["id"]
    client.post(f"/parent/rewards/{reward_id}/toggle")

    client.post(f"/profiles/{child_id}/enter")
    assert client.get("/child/rewards").json()["rewards"] == []
    redeem = client.post(f"/child/rewards/{reward_id}/redeem", follow_redirects=False)
    assert redeem.status_code == 409


def test_outcome_metrics_route(client, parent, add_child, add_task):
    child_id = add_child("Sam")
    done = add_task(child_id, reward_minutes=25)
    add_task(child_id, title="Homework", reward_minutes=10)
    client.post(f"/profiles/{child_id}/enter")
    client.post(f"/child/tasks/{done}/submit")
    client.post("/child/exit-mode")
    client.post(f"/parent/tasks/{done}/approve")

    metrics = client.get(f"/parent/outcomes/{child_id}").json()["metrics"]
    assert metrics["tasks_assigned"] == 2
    assert metrics["tasks_approved"] == 1
    assert metrics["completion_rate"] == 50
    assert metrics["minutes_earned"] == 25

    bad = client.get(
        f"/parent/outcomes/{child_id}", params={"start": "2024-06-10", "end": "2024-06-01"}
    )
    assert bad.status_code == 400


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_timestamps_are_stored_as_naive_utc(session: Session):
    family = Family(name="Rivera")
    session.add(family)
    session.commit()
    session.expire(family)
    assert family.created_at.tzinfo is None


def test_only_the_event_stream_runs_on_the_loop():
    async_paths = [
        route.path
        for route in app.routes
        if isinstance(route, APIRoute) and inspect.iscoroutinefunction(route.endpoint)
    ]
    assert async_paths == ["/events/stream"]
