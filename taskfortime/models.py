from datetime import date, datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import Column, JSON
from sqlmodel import Field, SQLModel, Relationship

XP_PER_TASK = 10
BONUS_XP = 5
XP_PER_LEVEL = 100


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def level_for_xp(xp: int) -> int:
    return 1 + max(xp, 0) // XP_PER_LEVEL


class AccountRole(str, Enum):
    parent = "parent"
    child = "child"


class Plan(str, Enum):
    trial = "trial"
    free = "free"
    pro = "pro"


class TaskStatus(str, Enum):
    active = "active"
    ready_for_review = "ready_for_review"
    approved = "approved"
    rejected = "rejected"


COMPLETED_STATUSES = (TaskStatus.ready_for_review, TaskStatus.approved)


class TaskEventType(str, Enum):
    completed = "completed"
    approved = "approved"
    rejected = "rejected"


class LedgerUnit(str, Enum):
    minutes = "minutes"
    stars = "stars"


class TransactionType(str, Enum):
    task_reward = "task_reward"
    interest = "interest"
    parent_bonus = "parent_bonus"
    parent_reset = "parent_reset"
    savings_deposit = "savings_deposit"
    reward_redemption = "reward_redemption"


class RewardStatus(str, Enum):
    available = "available"
    unavailable = "unavailable"


class GoalStatus(str, Enum):
    active = "active"
    completed = "completed"


class QuestStatus(str, Enum):
    active = "active"
    completed = "completed"
    cancelled = "cancelled"


class Family(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    timezone: str = Field(default="UTC")
    created_at: datetime = Field(default_factory=utcnow)

    accounts: list["Account"] = Relationship(back_populates="family")


class Account(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    family_id: int = Field(foreign_key="family.id", index=True)
    email: str = Field(index=True)
    display_name: str
    hashed_password: str
    role: AccountRole
    child_id: Optional[int] = Field(default=None, foreign_key="child.id")
    notify_task_approvals: bool = Field(default=True)
    notify_daily_summary: bool = Field(default=False)
    plan: Plan = Field(default=Plan.free)
    trial_ends_at: Optional[datetime] = None
    is_owner: bool = False
    created_at: datetime = Field(default_factory=utcnow)

    family: Family = Relationship(back_populates="accounts")


class Child(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    family_id: int = Field(foreign_key="family.id", index=True)
    name: str
    xp: int = Field(default=0, ge=0)
    level: int = Field(default=1)
    pin_hash: Optional[str] = None
    # Bumped under the row lock taken before every balance check.
    ledger_version: int = Field(default=0)
    created_at: datetime = Field(default_factory=utcnow)
    deleted_at: Optional[datetime] = None

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None


class PinAttempt(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    child_id: int = Field(foreign_key="child.id", index=True)
    succeeded: bool
    created_at: datetime = Field(default_factory=utcnow)


class TaskTemplate(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    family_id: int = Field(foreign_key="family.id", index=True)
    title: str
    description: Optional[str] = None
    category: Optional[str] = None
    reward_minutes: int = Field(default=0, ge=0)
    requires_approval: bool = True
    active: bool = True
    created_at: datetime = Field(default_factory=utcnow)


class AssignedTask(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    family_id: int = Field(foreign_key="family.id", index=True)
    child_id: int = Field(foreign_key="child.id", index=True)
    template_id: Optional[int] = Field(default=None, foreign_key="tasktemplate.id")
    title: str
    description: Optional[str] = None
    category: Optional[str] = None
    reward_minutes: int = Field(default=0, ge=0)
    requires_approval: bool = True
    status: TaskStatus = Field(default=TaskStatus.active)
    created_at: datetime = Field(default_factory=utcnow, index=True)
    updated_at: datetime = Field(default_factory=utcnow)
    deleted_at: Optional[datetime] = None


class TaskEvent(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    family_id: int = Field(foreign_key="family.id", index=True)
    child_id: int = Field(foreign_key="child.id")
    assigned_task_id: int = Field(foreign_key="assignedtask.id", index=True)
    event_type: TaskEventType
    actor_account_id: Optional[int] = Field(default=None, foreign_key="account.id")
    note: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class LedgerEntry(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    family_id: int = Field(foreign_key="family.id", index=True)
    child_id: int = Field(foreign_key="child.id", index=True)
    unit: LedgerUnit = Field(default=LedgerUnit.minutes)
    delta: int
    reason: str
    transaction_type: TransactionType
    task_id: Optional[int] = Field(default=None, foreign_key="assignedtask.id")
    reward_id: Optional[int] = Field(default=None, foreign_key="reward.id")
    created_at: datetime = Field(default_factory=utcnow)


class Reward(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    family_id: int = Field(foreign_key="family.id", index=True)
    title: str
    cost_minutes: int = Field(ge=0)
    icon: Optional[str] = None
    status: RewardStatus = Field(default=RewardStatus.available)
    created_at: datetime = Field(default_factory=utcnow)


class RewardRedemption(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    family_id: int = Field(foreign_key="family.id", index=True)
    child_id: int = Field(foreign_key="child.id")
    reward_id: int = Field(foreign_key="reward.id")
    minutes_spent: int
    created_at: datetime = Field(default_factory=utcnow)


class SavingsGoal(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    family_id: int = Field(foreign_key="family.id", index=True)
    child_id: int = Field(foreign_key="child.id", index=True)
    title: str
    target_stars: int = Field(gt=0)
    current_stars: int = Field(default=0, ge=0)
    status: GoalStatus = Field(default=GoalStatus.active)
    created_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None


class InterestSetting(SQLModel, table=True):
    child_id: int = Field(foreign_key="child.id", primary_key=True)
    weekly_rate: int = Field(default=0, ge=0, le=100)
    last_applied_at: Optional[datetime] = None


class FamilyQuest(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    family_id: int = Field(foreign_key="family.id", index=True)
    title: str
    reward_description: Optional[str] = None
    target_completion_rate: float = Field(ge=0, le=100)
    start_date: date
    end_date: date
    status: QuestStatus = Field(default=QuestStatus.active)
    created_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None


class CoachInsight(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    family_id: int = Field(foreign_key="family.id", index=True)
    scope: str = Field(default="family")
    child_id: Optional[int] = Field(default=None, foreign_key="child.id")
    week_start: date
    title: str
    observation: str
    diagnosis: str
    recommendation: str
    expected_result: str
    next_check: str
    impact_score: int
    created_by: str = Field(default="system")
    source_metrics: dict = Field(default_factory=dict, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=utcnow)


__all__ = [
    "Family",
    "Account",
    "Child",
    "PinAttempt",
    "TaskTemplate",
    "AssignedTask",
    "TaskEvent",
    "LedgerEntry",
    "Reward",
    "RewardRedemption",
    "SavingsGoal",
    "InterestSetting",
    "FamilyQuest",
    "CoachInsight",
    "AccountRole",
    "Plan",
    "TaskStatus",
    "TaskEventType",
    "LedgerUnit",
    "TransactionType",
    "RewardStatus",
    "GoalStatus",
    "QuestStatus",
    "COMPLETED_STATUSES",
    "XP_PER_TASK",
    "BONUS_XP",
    "level_for_xp",
    "utcnow",
]
