"""Family quest progress.

Progress is recomputed from the current task and child rows on every read and
never stored. A quest with no live children or no live tasks in its window is
leftover setup and is hidden rather than reported at 0%.
"""
import logging
from dataclasses import asdict, dataclass
from datetime import date, datetime, time
from typing import Iterable, Optional

from sqlalchemy import update
from sqlmodel import Session, select

from .models import (
    COMPLETED_STATUSES,
    AssignedTask,
    Child,
    FamilyQuest,
    QuestStatus,
    utcnow,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QuestProgress:
    quest_id: int
    total_assigned: int
    total_completed: int
    current_completion_rate: float
    target_rate: float
    is_met: bool

    def as_dict(self) -> dict:
        return asdict(self)


def quest_window(start_date: date, end_date: date) -> tuple[datetime, datetime]:
    return datetime.combine(start_date, time.min), datetime.combine(end_date, time.max)


def summarize_quest(
    quest: FamilyQuest, children: Iterable[Child], tasks: Iterable[AssignedTask]
) -> Optional[QuestProgress]:
    live_child_ids = {child.id for child in children if child.deleted_at is None}
    window_start, window_end = quest_window(quest.start_date, quest.end_date)
    live_tasks = [
        task
        for task in tasks
        if task.deleted_at is None
        and task.child_id in live_child_ids
        and window_start <= task.created_at <= window_end
    ]
    if not live_child_ids or not live_tasks:
        return None
    assigned = len(live_tasks)
    completed = sum(1 for task in live_tasks if task.status in COMPLETED_STATUSES)
    rate = completed / assigned * 100
    return QuestProgress(
        quest_id=quest.id,
        total_assigned=assigned,
        total_completed=completed,
        current_completion_rate=rate,
        target_rate=quest.target_completion_rate,
        is_met=rate >= quest.target_completion_rate,
    )


def quest_progress(session: Session, quest: FamilyQuest) -> Optional[QuestProgress]:
    children = session.exec(
        select(Child).where(Child.family_id == quest.family_id, Child.deleted_at.is_(None))
    ).all()
    window_start, window_end = quest_window(quest.start_date, quest.end_date)
    tasks = session.exec(
        select(AssignedTask).where(
            AssignedTask.family_id == quest.family_id,
            AssignedTask.deleted_at.is_(None),
            AssignedTask.created_at >= window_start,
            AssignedTask.created_at <= window_end,
        )
    ).all()
    return summarize_quest(quest, children, tasks)


def celebration_edge(previous: Optional[QuestProgress], current: Optional[QuestProgress]) -> bool:
    was_met = bool(previous and previous.is_met)
    return bool(current and current.is_met) and not was_met


def celebrate_if_met(session: Session, quest: FamilyQuest, progress: Optional[QuestProgress]) -> bool:
    """Move an active quest to completed the first time its target is met.

    Returns True only for the call that performed the transition, so the
    celebration fires once however often the quest is re-read.
    """
    if not progress or not progress.is_met or quest.status != QuestStatus.active:
        return False
    result = session.connection().execute(
        update(FamilyQuest)
        .where(FamilyQuest.id == quest.id, FamilyQuest.status == QuestStatus.active)
        .values(status=QuestStatus.completed, completed_at=utcnow())
    )
    session.commit()
    session.refresh(quest)
    if result.rowcount == 1:
        logger.info("Quest %s completed for family %s", quest.id, quest.family_id)
        return True
    return False


def create_quest(
    session: Session,
    family_id: int,
    *,
    title: str,
    target_completion_rate: float,
    start_date: date,
    end_date: date,
    reward_description: Optional[str] = None,
) -> FamilyQuest:
    if end_date < start_date:
        raise ValueError("Quest must end on or after its start date")
    if not 0 <= target_completion_rate <= 100:
        raise ValueError("Target completion rate must be between 0 and 100")
    quest = FamilyQuest(
        family_id=family_id,
        title=title,
        reward_description=reward_description,
        target_completion_rate=target_completion_rate,
        start_date=start_date,
        end_date=end_date,
    )
    session.add(quest)
    session.commit()
    session.refresh(quest)
    return quest


def current_quest(session: Session, family_id: int) -> Optional[FamilyQuest]:
    """Newest quest that is still running or was just completed."""
    return session.exec(
        select(FamilyQuest)
        .where(
            FamilyQuest.family_id == family_id,
            FamilyQuest.status.in_([QuestStatus.active, QuestStatus.completed]),
        )
        .order_by(FamilyQuest.created_at.desc(), FamilyQuest.id.desc())
    ).first()


def read_quest(session: Session, family_id: int) -> Optional[dict]:
    """Current quest with fresh progress, or None when there is nothing to show."""
    quest = current_quest(session, family_id)
    if not quest:
        return None
    progress = quest_progress(session, quest)
    if progress is None:
        return None
    celebrate = celebrate_if_met(session, quest, progress)
    return {
        "quest": quest.model_dump(mode="json"),
        "progress": progress.as_dict(),
        "celebrate": celebrate,
    }
