"""Outbound email.

Messages are rendered from Jinja2 templates and sent through the Resend HTTP
API. Sending is best effort: every failure is reported as an ``EmailResult``
and logged, never raised into the request that triggered it.
"""
import logging
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, time, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional

import httpx
from fastapi import Depends
from jinja2 import Environment, FileSystemLoader, TemplateError, select_autoescape
from sqlalchemy import func
from sqlmodel import Session, select

from .config import Settings, get_settings
from .models import (
    Account,
    AccountRole,
    AssignedTask,
    Child,
    Reward,
    RewardRedemption,
    TaskEvent,
    TaskEventType,
    XP_PER_TASK,
)

logger = logging.getLogger(__name__)

RESEND_URL = "https://api.resend.com/emails"
TEMPLATE_DIR = Path(__file__).parent / "templates" / "email"

SUBJECTS = {
    "task_submitted": "{child_name} finished \"{task_title}\"",
    "daily_summary": "Today's family progress",
}

templates = Environment(
    loader=FileSystemLoader(str(TEMPLATE_DIR)),
    autoescape=select_autoescape(["html"]),
)


@dataclass
class EmailResult:
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None


@dataclass
class ChildDaySummary:
    name: str
    tasks_approved: int = 0
    xp_earned: int = 0
    rewards_redeemed: int = 0


@dataclass
class DailySummary:
    recipient: str
    parent_name: str
    day: date
    tasks_approved: int = 0
    xp_earned: int = 0
    rewards_redeemed: int = 0
    children: List[ChildDaySummary] = field(default_factory=list)

    def as_params(self) -> dict:
        return {
            "parent_name": self.parent_name,
            "day": self.day.isoformat(),
            "tasks_approved": self.tasks_approved,
            "xp_earned": self.xp_earned,
            "rewards_redeemed": self.rewards_redeemed,
            "children": [asdict(child) for child in self.children],
        }


def render_email(kind: str, params: Dict[str, Any]) -> tuple[str, str]:
    subject = SUBJECTS[kind].format(**params)
    html = templates.get_template(f"{kind}.html").render(**params)
    return subject, html


class EmailDispatcher:
    def __init__(self, api_key: Optional[str], sender: str, client: Optional[httpx.Client] = None):
        self.api_key = api_key
        self.sender = sender
        self.client = client

    def send(self, recipient: str, kind: str, params: Dict[str, Any]) -> EmailResult:
        if not self.api_key:
            logger.warning("Email not sent to %s: RESEND_API_KEY is not set", recipient)
            return EmailResult(False, error="Email service not configured")
        try:
            subject, html = render_email(kind, params)
        except (KeyError, TemplateError) as exc:
            logger.exception("Could not render %s email", kind)
            return EmailResult(False, error=str(exc))

        payload = {"from": self.sender, "to": [recipient], "subject": subject, "html": html}
        headers = {"Authorization": f"Bearer {self.api_key}"}
        try:
            if self.client is not None:
                resp = self.client.post(RESEND_URL, json=payload, headers=headers)
            else:
                with httpx.Client(timeout=10.0) as client:
                    resp = client.post(RESEND_URL, json=payload, headers=headers)
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            logger.exception("Email delivery to %s failed", recipient)
            return EmailResult(False, error=str(exc))
        message_id = resp.json().get("id")
        logger.info("Sent %s email to %s (%s)", kind, recipient, message_id)
        return EmailResult(True, message_id=message_id)


def get_email_dispatcher(settings: Settings = Depends(get_settings)) -> EmailDispatcher:
    return EmailDispatcher(settings.resend_api_key, settings.email_from)


def task_submitted_recipients(session: Session, family_id: int) -> List[Account]:
    return list(
        session.exec(
            select(Account).where(
                Account.family_id == family_id,
                Account.role == AccountRole.parent,
                Account.notify_task_approvals == True,  # noqa: E712
            )
        ).all()
    )


def notify_task_submitted(
    dispatcher: EmailDispatcher,
    recipients: List[str],
    *,
    child_name: str,
    task_title: str,
    reward_minutes: int,
    app_url: str,
) -> List[EmailResult]:
    """Background task run after the submit response has been sent."""
    results = []
    for recipient in recipients:
        try:
            result = dispatcher.send(
                recipient,
                "task_submitted",
                {
                    "child_name": child_name,
                    "task_title": task_title,
                    "reward_minutes": reward_minutes,
                    "approve_url": f"{app_url}/parent/approvals",
                },
            )
        except Exception as exc:
            logger.exception("Task notification to %s crashed", recipient)
            result = EmailResult(False, error=str(exc))
        if not result.success:
            logger.warning("Task notification to %s failed: %s", recipient, result.error)
        results.append(result)
    return results


def build_daily_summaries(session: Session, day: date) -> List[DailySummary]:
    start = datetime.combine(day, time.min)
    end = start + timedelta(days=1)
    parents = session.exec(
        select(Account).where(
            Account.role == AccountRole.parent,
            Account.notify_daily_summary == True,  # noqa: E712
        )
    ).all()

    summaries = []
    for parent in parents:
        children = session.exec(
            select(Child).where(Child.family_id == parent.family_id, Child.deleted_at.is_(None))
        ).all()
        summary = DailySummary(recipient=parent.email, parent_name=parent.display_name, day=day)
        for child in children:
            approved = session.exec(
                select(func.count(TaskEvent.id))
                .join(AssignedTask, AssignedTask.id == TaskEvent.assigned_task_id)
                .where(
                    TaskEvent.child_id == child.id,
                    TaskEvent.event_type == TaskEventType.approved,
                    TaskEvent.created_at >= start,
                    TaskEvent.created_at < end,
                    AssignedTask.deleted_at.is_(None),
                )
            ).one()
            redeemed = session.exec(
                select(func.count(RewardRedemption.id))
                .join(Reward, Reward.id == RewardRedemption.reward_id)
                .where(
                    RewardRedemption.child_id == child.id,
                    RewardRedemption.created_at >= start,
                    RewardRedemption.created_at < end,
                )
            ).one()
            stats = ChildDaySummary(
                name=child.name,
                tasks_approved=int(approved or 0),
                xp_earned=int(approved or 0) * XP_PER_TASK,
                rewards_redeemed=int(redeemed or 0),
            )
            summary.children.append(stats)
            summary.tasks_approved += stats.tasks_approved
            summary.xp_earned += stats.xp_earned
            summary.rewards_redeemed += stats.rewards_redeemed
        summaries.append(summary)
    return summaries


def send_daily_summaries(session: Session, dispatcher: EmailDispatcher, day: date) -> dict:
    sent = 0
    failed = 0
    for summary in build_daily_summaries(session, day):
        result = dispatcher.send(summary.recipient, "daily_summary", summary.as_params())
        if result.success:
            sent += 1
        else:
            failed += 1
    logger.info("Daily summaries for %s: sent=%s failed=%s", day, sent, failed)
    return {"day": day.isoformat(), "sent": sent, "failed": failed}
