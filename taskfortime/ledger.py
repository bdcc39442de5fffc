"""Append-only economy ledger.

Every balance (time-bank minutes and stars) is ``sum(delta)`` over the
child's ledger rows. There is no stored balance to drift and no way to edit
or remove an entry; corrections are offsetting entries.

Operations that must not overdraw (redemption, savings deposits) first take a
row lock on the child by bumping ``Child.ledger_version``. On PostgreSQL that
is a row lock; on SQLite it is the database write lock. Either way a second
writer waits until the first commits and then sees the new balance.
"""
import logging
from datetime import timedelta
from typing import Optional

from sqlalchemy import func, update
from sqlmodel import Session, select

from .errors import (
    ChildNotFoundError,
    GoalClosedError,
    GoalNotFoundError,
    InsufficientFundsError,
    RewardUnavailableError,
)
from .models import (
    BONUS_XP,
    Child,
    GoalStatus,
    InterestSetting,
    LedgerEntry,
    LedgerUnit,
    Reward,
    RewardRedemption,
    RewardStatus,
    SavingsGoal,
    TransactionType,
    level_for_xp,
    utcnow,
)

logger = logging.getLogger(__name__)

INTEREST_PERIOD = timedelta(days=7)


def append_entry(
    session: Session,
    child: Child,
    delta: int,
    reason: str,
    transaction_type: TransactionType,
    *,
    unit: LedgerUnit = LedgerUnit.minutes,
    task_id: Optional[int] = None,
    reward_id: Optional[int] = None,
) -> LedgerEntry:
    """Stage one immutable entry. The caller owns the transaction."""
    entry = LedgerEntry(
        family_id=child.family_id,
        child_id=child.id,
        unit=unit,
        delta=delta,
        reason=reason,
        transaction_type=transaction_type,
        task_id=task_id,
        reward_id=reward_id,
    )
    session.add(entry)
    return entry


def get_balance(session: Session, child_id: int, unit: LedgerUnit = LedgerUnit.minutes) -> int:
    total = session.exec(
        select(func.coalesce(func.sum(LedgerEntry.delta), 0)).where(
            LedgerEntry.child_id == child_id, LedgerEntry.unit == unit
        )
    ).one()
    return int(total or 0)


def get_family_balances(
    session: Session, family_id: int, unit: LedgerUnit = LedgerUnit.minutes
) -> dict[int, int]:
    rows = session.exec(
        select(LedgerEntry.child_id, func.coalesce(func.sum(LedgerEntry.delta), 0))
        .where(LedgerEntry.family_id == family_id, LedgerEntry.unit == unit)
        .group_by(LedgerEntry.child_id)
    ).all()
    return {child_id: int(total) for child_id, total in rows}


def ledger_history(
    session: Session, child_id: int, unit: Optional[LedgerUnit] = None, limit: int = 50
) -> list[LedgerEntry]:
    statement = select(LedgerEntry).where(LedgerEntry.child_id == child_id)
    if unit is not None:
        statement = statement.where(LedgerEntry.unit == unit)
    statement = statement.order_by(LedgerEntry.created_at.desc(), LedgerEntry.id.desc()).limit(limit)
    return list(session.exec(statement).all())


def lock_child(session: Session, child: Child) -> Child:
    """Serialise balance checks for one child until the transaction ends."""
    result = session.connection().execute(
        update(Child)
        .where(Child.id == child.id, Child.deleted_at.is_(None))
        .values(ledger_version=Child.ledger_version + 1)
    )
    if result.rowcount != 1:
        session.rollback()
        raise ChildNotFoundError()
    locked = session.exec(
        select(Child).where(Child.id == child.id).execution_options(populate_existing=True)
    ).one()
    return locked


def redeem(session: Session, child: Child, reward: Reward) -> RewardRedemption:
    if reward.family_id != child.family_id or reward.status != RewardStatus.available:
        raise RewardUnavailableError()
    try:
        locked = lock_child(session, child)
        balance = get_balance(session, locked.id, LedgerUnit.minutes)
        if balance < reward.cost_minutes:
            session.rollback()
            logger.info(
                "Redemption refused: child=%s reward=%s balance=%s cost=%s",
                child.id,
                reward.id,
                balance,
                reward.cost_minutes,
            )
            raise InsufficientFundsError(balance=balance, required=reward.cost_minutes)
        append_entry(
            session,
            locked,
            -reward.cost_minutes,
            f"Redeemed: {reward.title}",
            TransactionType.reward_redemption,
            reward_id=reward.id,
        )
        redemption = RewardRedemption(
            family_id=locked.family_id,
            child_id=locked.id,
            reward_id=reward.id,
            minutes_spent=reward.cost_minutes,
        )
        session.add(redemption)
        session.commit()
    except Exception:
        session.rollback()
        raise
    session.refresh(redemption)
    logger.info("Reward %s redeemed by child %s", reward.id, child.id)
    return redemption


def grant_time_bonus(session: Session, child: Child, minutes: int, reason: str) -> LedgerEntry:
    if minutes <= 0:
        raise ValueError("Bonus minutes must be positive")
    try:
        locked = lock_child(session, child)
        entry = append_entry(
            session, locked, minutes, reason or "Parent bonus", TransactionType.parent_bonus
        )
        locked.xp += BONUS_XP
        locked.level = level_for_xp(locked.xp)
        session.add(locked)
        session.commit()
    except Exception:
        session.rollback()
        raise
    session.refresh(entry)
    return entry


def grant_stars(session: Session, child: Child, stars: int, reason: str) -> LedgerEntry:
    if stars <= 0:
        raise ValueError("Bonus stars must be positive")
    entry = append_entry(
        session,
        child,
        stars,
        reason or "Parent bonus",
        TransactionType.parent_bonus,
        unit=LedgerUnit.stars,
    )
    session.commit()
    session.refresh(entry)
    return entry


def reset_stars(session: Session, child: Child, reason: str = "Parent reset") -> Optional[LedgerEntry]:
    """Bring the stars balance to exactly zero with one offsetting entry."""
    try:
        locked = lock_child(session, child)
        balance = get_balance(session, locked.id, LedgerUnit.stars)
        if balance == 0:
            session.commit()
            return None
        entry = append_entry(
            session,
            locked,
            -balance,
            reason,
            TransactionType.parent_reset,
            unit=LedgerUnit.stars,
        )
        session.commit()
    except Exception:
        session.rollback()
        raise
    session.refresh(entry)
    return entry


def set_interest_rate(session: Session, child: Child, weekly_rate: int) -> InterestSetting:
    if not 0 <= weekly_rate <= 100:
        raise ValueError("Weekly rate must be between 0 and 100")
    setting = session.get(InterestSetting, child.id)
    if setting is None:
        setting = InterestSetting(child_id=child.id)
    setting.weekly_rate = weekly_rate
    session.add(setting)
    session.commit()
    session.refresh(setting)
    return setting


def apply_weekly_interest(session: Session, family_id: Optional[int] = None) -> list[LedgerEntry]:
    now = utcnow()
    statement = (
        select(InterestSetting, Child)
        .where(InterestSetting.child_id == Child.id)
        .where(Child.deleted_at.is_(None), InterestSetting.weekly_rate > 0)
    )
    if family_id is not None:
        statement = statement.where(Child.family_id == family_id)
    entries = []
    for setting, child in session.exec(statement).all():
        if setting.last_applied_at and now - setting.last_applied_at < INTEREST_PERIOD:
            continue
        balance = get_balance(session, child.id, LedgerUnit.stars)
        interest = balance * setting.weekly_rate // 100 if balance > 0 else 0
        if interest > 0:
            entries.append(
                append_entry(
                    session,
                    child,
                    interest,
                    f"Weekly interest ({setting.weekly_rate}%)",
                    TransactionType.interest,
                    unit=LedgerUnit.stars,
                )
            )
        setting.last_applied_at = now
        session.add(setting)
    session.commit()
    logger.info("Applied weekly interest: %s entries", len(entries))
    return entries


def create_savings_goal(session: Session, child: Child, title: str, target_stars: int) -> SavingsGoal:
    if target_stars <= 0:
        raise ValueError("Target must be positive")
    goal = SavingsGoal(
        family_id=child.family_id,
        child_id=child.id,
        title=title,
        target_stars=target_stars,
    )
    session.add(goal)
    session.commit()
    session.refresh(goal)
    return goal


def get_goal(session: Session, child: Child, goal_id: int) -> SavingsGoal:
    goal = session.exec(
        select(SavingsGoal).where(SavingsGoal.id == goal_id, SavingsGoal.child_id == child.id)
    ).first()
    if not goal:
        raise GoalNotFoundError()
    return goal


def deposit_to_goal(session: Session, child: Child, goal_id: int, stars: int) -> SavingsGoal:
    """Move stars from the balance into a goal; completes the goal at most once."""
    if stars <= 0:
        raise ValueError("Deposit must be positive")
    try:
        locked = lock_child(session, child)
        goal = get_goal(session, locked, goal_id)
        if goal.status != GoalStatus.active:
            raise GoalClosedError()
        balance = get_balance(session, locked.id, LedgerUnit.stars)
        if balance < stars:
            session.rollback()
            raise InsufficientFundsError(
                "Not enough stars yet", balance=balance, required=stars
            )
        append_entry(
            session,
            locked,
            -stars,
            f"Saved for: {goal.title}",
            TransactionType.savings_deposit,
            unit=LedgerUnit.stars,
        )
        goal.current_stars += stars
        if goal.current_stars >= goal.target_stars:
            goal.status = GoalStatus.completed
            goal.completed_at = utcnow()
            logger.info("Savings goal %s completed for child %s", goal.id, child.id)
        session.add(goal)
        session.commit()
    except Exception:
        session.rollback()
        raise
    session.refresh(goal)
    return goal
