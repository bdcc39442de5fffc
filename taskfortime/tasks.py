"""Assigned-task lifecycle.

    active ──submit──▶ ready_for_review ──approve──▶ approved
       ▲                     │
       └───── rejected ◀─────┘ reject   (rejected ──submit──▶ ready_for_review)

Each transition is one conditional UPDATE whose WHERE clause carries the
ownership scope and the allowed predecessor states, so a duplicate submit, a
cross-child submit or an approve racing a resubmission cannot both succeed.
"""
import enum
import logging
from typing import Iterable, Optional

from sqlalchemy import update
from sqlmodel import Session, select

from .errors import ChildNotFoundError, InvalidTransitionError, TaskNotFoundError
from .ledger import append_entry
from .models import (
    XP_PER_TASK,
    AssignedTask,
    Child,
    TaskEvent,
    TaskEventType,
    TaskStatus,
    TaskTemplate,
    TransactionType,
    level_for_xp,
    utcnow,
)

logger = logging.getLogger(__name__)

SUBMITTABLE = (TaskStatus.active, TaskStatus.rejected)


class SubmitOutcome(str, enum.Enum):
    submitted = "submitted"
    already_submitted = "already_submitted"


def _transition(session: Session, statement) -> int:
    return session.connection().execute(statement).rowcount


def _reload(session: Session, task_id: int) -> AssignedTask:
    return session.exec(
        select(AssignedTask)
        .where(AssignedTask.id == task_id)
        .execution_options(populate_existing=True)
    ).one()


def get_task(session: Session, family_id: int, task_id: int) -> AssignedTask:
    task = session.exec(
        select(AssignedTask).where(
            AssignedTask.id == task_id,
            AssignedTask.family_id == family_id,
            AssignedTask.deleted_at.is_(None),
        )
    ).first()
    if not task:
        raise TaskNotFoundError()
    return task


def get_child(session: Session, family_id: int, child_id: int) -> Child:
    child = session.exec(
        select(Child).where(
            Child.id == child_id, Child.family_id == family_id, Child.deleted_at.is_(None)
        )
    ).first()
    if not child:
        raise ChildNotFoundError()
    return child


def assign_task(
    session: Session,
    child: Child,
    *,
    title: str,
    reward_minutes: int,
    description: Optional[str] = None,
    category: Optional[str] = None,
    requires_approval: bool = True,
    template_id: Optional[int] = None,
) -> AssignedTask:
    if reward_minutes < 0:
        raise ValueError("reward_minutes must be zero or more")
    task = AssignedTask(
        family_id=child.family_id,
        child_id=child.id,
        template_id=template_id,
        title=title,
        description=description,
        category=category,
        reward_minutes=reward_minutes,
        requires_approval=requires_approval,
    )
    session.add(task)
    session.commit()
    session.refresh(task)
    return task


def assign_template(session: Session, template: TaskTemplate, child: Child) -> AssignedTask:
    if template.family_id != child.family_id:
        raise ChildNotFoundError()
    return assign_task(
        session,
        child,
        title=template.title,
        description=template.description,
        category=template.category,
        reward_minutes=template.reward_minutes,
        requires_approval=template.requires_approval,
        template_id=template.id,
    )


def list_child_tasks(
    session: Session, child: Child, statuses: Optional[Iterable[TaskStatus]] = None
) -> list[AssignedTask]:
    statement = select(AssignedTask).where(
        AssignedTask.child_id == child.id,
        AssignedTask.family_id == child.family_id,
        AssignedTask.deleted_at.is_(None),
    )
    if statuses:
        statement = statement.where(AssignedTask.status.in_(list(statuses)))
    return list(session.exec(statement.order_by(AssignedTask.created_at.desc())).all())


def list_review_queue(session: Session, family_id: int) -> list[tuple[AssignedTask, Child]]:
    rows = session.exec(
        select(AssignedTask, Child)
        .where(AssignedTask.child_id == Child.id)
        .where(
            AssignedTask.family_id == family_id,
            AssignedTask.status == TaskStatus.ready_for_review,
            AssignedTask.deleted_at.is_(None),
            Child.deleted_at.is_(None),
        )
        .order_by(AssignedTask.updated_at)
    ).all()
    return list(rows)


def _record_event(
    session: Session,
    task: AssignedTask,
    event_type: TaskEventType,
    actor_account_id: Optional[int],
    note: Optional[str] = None,
):
    session.add(
        TaskEvent(
            family_id=task.family_id,
            child_id=task.child_id,
            assigned_task_id=task.id,
            event_type=event_type,
            actor_account_id=actor_account_id,
            note=note,
        )
    )


def submit_task(
    session: Session, child: Child, task_id: int, actor_account_id: Optional[int] = None
) -> tuple[SubmitOutcome, AssignedTask]:
    """Mark a task ready for review on behalf of its child.

    Submitting a task that already left ``active``/``rejected`` is not an
    error: the caller gets ``already_submitted`` and shows the same
    confirmation.
    """
    now = utcnow()
    try:
        updated = _transition(
            session,
            update(AssignedTask)
            .where(
                AssignedTask.id == task_id,
                AssignedTask.child_id == child.id,
                AssignedTask.family_id == child.family_id,
                AssignedTask.deleted_at.is_(None),
                AssignedTask.status.in_(SUBMITTABLE),
            )
            .values(status=TaskStatus.ready_for_review, updated_at=now),
        )
        if updated == 1:
            task = _reload(session, task_id)
            _record_event(session, task, TaskEventType.completed, actor_account_id)
            session.commit()
            logger.info("Task %s submitted by child %s", task_id, child.id)
            return SubmitOutcome.submitted, task
        session.rollback()
    except Exception:
        session.rollback()
        raise

    task = session.exec(
        select(AssignedTask).where(
            AssignedTask.id == task_id,
            AssignedTask.child_id == child.id,
            AssignedTask.family_id == child.family_id,
            AssignedTask.deleted_at.is_(None),
        )
    ).first()
    if not task:
        raise TaskNotFoundError()
    logger.info("Task %s already submitted (status=%s)", task_id, task.status.value)
    return SubmitOutcome.already_submitted, task


def approve_task(
    session: Session, family_id: int, task_id: int, actor_account_id: Optional[int] = None
) -> AssignedTask:
    """Approve a submitted task and settle its reward.

    The status change, the ``task_reward`` ledger entry, the xp increase and
    the level recomputation commit together or not at all.
    """
    try:
        updated = _transition(
            session,
            update(AssignedTask)
            .where(
                AssignedTask.id == task_id,
                AssignedTask.family_id == family_id,
                AssignedTask.deleted_at.is_(None),
                AssignedTask.status == TaskStatus.ready_for_review,
            )
            .values(status=TaskStatus.approved, updated_at=utcnow()),
        )
        if updated != 1:
            session.rollback()
            raise InvalidTransitionError()
        task = _reload(session, task_id)
        _transition(
            session,
            update(Child)
            .where(Child.id == task.child_id, Child.family_id == family_id)
            .values(xp=Child.xp + XP_PER_TASK),
        )
        child = session.exec(
            select(Child)
            .where(Child.id == task.child_id)
            .execution_options(populate_existing=True)
        ).one()
        child.level = level_for_xp(child.xp)
        session.add(child)
        append_entry(
            session,
            child,
            task.reward_minutes,
            f"Task approved: {task.title}",
            TransactionType.task_reward,
            task_id=task.id,
        )
        _record_event(session, task, TaskEventType.approved, actor_account_id)
        session.commit()
    except Exception:
        session.rollback()
        raise
    session.refresh(task)
    logger.info("Task %s approved, %s minutes credited", task_id, task.reward_minutes)
    return task


def approve_tasks(
    session: Session, family_id: int, task_ids: Iterable[int], actor_account_id: Optional[int] = None
) -> dict[int, bool]:
    results = {}
    for task_id in task_ids:
        try:
            approve_task(session, family_id, task_id, actor_account_id)
            results[task_id] = True
        except InvalidTransitionError:
            results[task_id] = False
    return results


def reject_task(
    session: Session,
    family_id: int,
    task_id: int,
    actor_account_id: Optional[int] = None,
    note: Optional[str] = None,
) -> AssignedTask:
    try:
        updated = _transition(
            session,
            update(AssignedTask)
            .where(
                AssignedTask.id == task_id,
                AssignedTask.family_id == family_id,
                AssignedTask.deleted_at.is_(None),
                AssignedTask.status == TaskStatus.ready_for_review,
            )
            .values(status=TaskStatus.rejected, updated_at=utcnow()),
        )
        if updated != 1:
            session.rollback()
            raise InvalidTransitionError()
        task = _reload(session, task_id)
        _record_event(session, task, TaskEventType.rejected, actor_account_id, note)
        session.commit()
    except Exception:
        session.rollback()
        raise
    session.refresh(task)
    logger.info("Task %s returned for revision", task_id)
    return task


def soft_delete_task(session: Session, family_id: int, task_id: int) -> AssignedTask:
    task = get_task(session, family_id, task_id)
    task.deleted_at = utcnow()
    session.add(task)
    session.commit()
    session.refresh(task)
    return task


def soft_delete_child(session: Session, family_id: int, child_id: int) -> Child:
    child = get_child(session, family_id, child_id)
    child.deleted_at = utcnow()
    session.add(child)
    session.commit()
    session.refresh(child)
    return child
