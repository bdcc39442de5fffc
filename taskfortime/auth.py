import logging
from datetime import timedelta
from typing import Optional

from fastapi import Depends, HTTPException, Request
from passlib.context import CryptContext
from sqlalchemy import func
from sqlmodel import Session, select

from .config import Settings
from .db import get_session
from .errors import ChildContextError, ParentAccessRequired, PinRateLimitedError
from .models import Account, AccountRole, Child, Family, PinAttempt, Plan, utcnow
from .session_mode import SessionContext, start_session

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")

PIN_MAX_FAILURES = 5
PIN_LOCKOUT_WINDOW = timedelta(minutes=15)


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, hashed: str) -> bool:
    return pwd_context.verify(password, hashed)


def find_account(session: Session, account_id: int) -> Optional[Account]:
    return session.get(Account, account_id)


def build_parent_account(
    settings: Settings, *, family_id: int, email: str, display_name: str, password: str
) -> Account:
    account = Account(
        family_id=family_id,
        email=email.strip().lower(),
        display_name=display_name or "Parent",
        hashed_password=hash_password(password),
        role=AccountRole.parent,
        is_owner=bool(settings.owner_email)
        and email.strip().lower() == settings.owner_email.strip().lower(),
    )
    if settings.trials_enabled:
        account.plan = Plan.trial
        account.trial_ends_at = utcnow() + timedelta(days=settings.trial_days)
    return account


def register_family(
    session: Session,
    settings: Settings,
    *,
    family_name: str,
    email: str,
    display_name: str,
    password: str,
) -> Account:
    """Create a family and its first parent.

    The family row is committed first; if the account cannot be stored the
    family is deleted again so no orphaned tenancy is left behind.
    """
    family = Family(name=family_name or "My Family")
    session.add(family)
    session.commit()
    session.refresh(family)
    try:
        account = build_parent_account(
            settings,
            family_id=family.id,
            email=email,
            display_name=display_name,
            password=password,
        )
        session.add(account)
        session.commit()
    except Exception:
        session.rollback()
        logger.exception("Account creation failed, removing family %s", family.id)
        session.delete(session.get(Family, family.id))
        session.commit()
        raise
    session.refresh(account)
    return account


def find_login_account(session: Session, email: str) -> Optional[Account]:
    return session.exec(select(Account).where(Account.email == email.strip().lower())).first()


def login_account(request: Request, account: Account):
    request.session.clear()
    start_session(
        request.session,
        account_id=account.id,
        family_id=account.family_id,
        role=account.role,
    )


def logout_account(request: Request):
    request.session.clear()


def get_session_context(request: Request) -> SessionContext:
    return SessionContext.from_session(request.session)


def get_current_account(
    context: SessionContext = Depends(get_session_context),
    session: Session = Depends(get_session),
) -> Optional[Account]:
    if not context.is_authenticated:
        return None
    account = find_account(session, context.account_id)
    if not account or account.family_id != context.family_id:
        return None
    return account


def require_account(account: Optional[Account] = Depends(get_current_account)) -> Account:
    if not account:
        raise HTTPException(status_code=401)
    return account


def require_parent(
    account: Account = Depends(require_account),
    context: SessionContext = Depends(get_session_context),
) -> Account:
    if account.role != AccountRole.parent or context.is_child_mode:
        raise ParentAccessRequired()
    return account


def get_active_child(
    account: Account = Depends(require_account),
    context: SessionContext = Depends(get_session_context),
    session: Session = Depends(get_session),
) -> Child:
    child_id = context.active_child_id
    if account.role == AccountRole.child:
        child_id = account.child_id
    if child_id is None:
        raise ChildContextError()
    child = session.exec(
        select(Child).where(Child.id == child_id, Child.family_id == account.family_id)
    ).first()
    if not child or child.is_deleted:
        raise ChildContextError()
    return child


def set_child_pin(child: Child, pin: str):
    child.pin_hash = hash_password(pin)


def is_pin_rate_limited(session: Session, child_id: int) -> bool:
    since = utcnow() - PIN_LOCKOUT_WINDOW
    failures = session.exec(
        select(func.count(PinAttempt.id)).where(
            PinAttempt.child_id == child_id,
            PinAttempt.succeeded == False,  # noqa: E712
            PinAttempt.created_at >= since,
        )
    ).one()
    return int(failures or 0) >= PIN_MAX_FAILURES


def verify_child_pin(session: Session, child: Child, pin: str) -> bool:
    if is_pin_rate_limited(session, child.id):
        raise PinRateLimitedError()
    ok = bool(child.pin_hash) and verify_password(pin, child.pin_hash)
    session.add(PinAttempt(child_id=child.id, succeeded=ok))
    session.commit()
    if not ok:
        logger.info("Invalid PIN for child %s", child.id)
    return ok
