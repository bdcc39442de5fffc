"""Parent/child session boundary.

A session carries two independent facts: the authenticated account's role and
an optional *active child context*. While that context is active the session
may only reach child routes, whatever the account's real role is. A genuine
child account is always in child mode; there is no way for it to leave.

The context lives in the signed session cookie, so it ends with the browser
session and is wiped by sign-out.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import MutableMapping, Optional

from .models import AccountRole, utcnow

logger = logging.getLogger(__name__)

ACCOUNT_ID_KEY = "account_id"
FAMILY_ID_KEY = "family_id"
ROLE_KEY = "role"
ACTIVE_CHILD_ID_KEY = "active_child_id"
CHILD_MODE_ENTERED_AT_KEY = "child_mode_entered_at"

CHILD_HOME = "/child/dashboard"
PROFILE_PICKER = "/choose-profile"
LOGIN = "/login"

PARENT_ROUTE_PREFIXES = ("/parent", "/dashboard", "/settings", "/admin")


@dataclass(frozen=True)
class SessionContext:
    account_id: Optional[int] = None
    family_id: Optional[int] = None
    role: Optional[AccountRole] = None
    active_child_id: Optional[int] = None
    entered_at: Optional[datetime] = None

    @classmethod
    def from_session(cls, data: MutableMapping) -> "SessionContext":
        role = data.get(ROLE_KEY)
        entered_at = data.get(CHILD_MODE_ENTERED_AT_KEY)
        return cls(
            account_id=data.get(ACCOUNT_ID_KEY),
            family_id=data.get(FAMILY_ID_KEY),
            role=AccountRole(role) if role else None,
            active_child_id=data.get(ACTIVE_CHILD_ID_KEY),
            entered_at=datetime.fromisoformat(entered_at) if entered_at else None,
        )

    @property
    def is_authenticated(self) -> bool:
        return self.account_id is not None and self.family_id is not None

    @property
    def is_child_account(self) -> bool:
        return self.role == AccountRole.child

    @property
    def is_child_mode(self) -> bool:
        return self.is_child_account or self.active_child_id is not None

    @property
    def can_exit_child_mode(self) -> bool:
        return self.role == AccountRole.parent and self.active_child_id is not None


def _matches(path: str, prefixes) -> bool:
    for prefix in prefixes:
        if path == prefix or path.startswith(prefix.rstrip("/") + "/"):
            return True
    return False


def is_parent_route(path: str) -> bool:
    return _matches(path, PARENT_ROUTE_PREFIXES)


def is_route_authorized(path: str, context: SessionContext) -> bool:
    if context.is_child_mode and is_parent_route(path):
        return False
    return True


def resolve_redirect(path: str, context: SessionContext) -> Optional[str]:
    """Where a blocked request should go instead, or None when it may proceed."""
    if is_route_authorized(path, context):
        return None
    logger.info(
        "Blocked parent route in child mode: path=%s account=%s child=%s",
        path,
        context.account_id,
        context.active_child_id,
    )
    return CHILD_HOME


def start_session(data: MutableMapping, *, account_id: int, family_id: int, role: AccountRole):
    data[ACCOUNT_ID_KEY] = account_id
    data[FAMILY_ID_KEY] = family_id
    data[ROLE_KEY] = role.value


def enter_child_context(data: MutableMapping, child_id: int) -> SessionContext:
    data[ACTIVE_CHILD_ID_KEY] = child_id
    data[CHILD_MODE_ENTERED_AT_KEY] = utcnow().isoformat()
    context = SessionContext.from_session(data)
    logger.info("Entered child mode: account=%s child=%s", context.account_id, child_id)
    return context


def exit_child_context(data: MutableMapping) -> SessionContext:
    """Leave child mode. Only a parent account ever gets its context cleared."""
    context = SessionContext.from_session(data)
    if not context.can_exit_child_mode:
        return context
    data.pop(ACTIVE_CHILD_ID_KEY, None)
    data.pop(CHILD_MODE_ENTERED_AT_KEY, None)
    logger.info("Exited child mode: account=%s", context.account_id)
    return SessionContext.from_session(data)


def clear_child_context(data: MutableMapping):
    """Drop a stale context regardless of role; the caller must force re-auth."""
    data.pop(ACTIVE_CHILD_ID_KEY, None)
    data.pop(CHILD_MODE_ENTERED_AT_KEY, None)


def clear_session(data: MutableMapping):
    data.clear()
