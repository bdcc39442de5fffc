import logging
from datetime import date, timedelta
from typing import List, Optional

from contextlib import asynccontextmanager

from fastapi import BackgroundTasks, Depends, FastAPI, Form, HTTPException, Query, Request
from fastapi.responses import JSONResponse, RedirectResponse, StreamingResponse
from sqlmodel import Session, select
from starlette.middleware.sessions import SessionMiddleware

from .auth import (
    find_login_account,
    get_active_child,
    get_session_context,
    hash_password,
    login_account,
    logout_account,
    register_family,
    require_account,
    require_parent,
    set_child_pin,
    verify_child_pin,
    verify_password,
)
from .coaching import Recommender, build_recommender, coaching_payload, compute_coaching_signals
from .config import Settings, get_settings
from .db import get_session, init_db
from .errors import (
    ChildContextError,
    ChildNotFoundError,
    GoalClosedError,
    GoalNotFoundError,
    InsufficientFundsError,
    InvalidTransitionError,
    ParentAccessRequired,
    PinRateLimitedError,
    RewardUnavailableError,
    TaskNotFoundError,
)
from .insights import store_weekly_insights
from .ledger import (
    apply_weekly_interest,
    create_savings_goal,
    deposit_to_goal,
    get_balance,
    get_family_balances,
    grant_stars,
    grant_time_bonus,
    ledger_history,
    redeem,
    reset_stars,
    set_interest_rate,
)
from .metrics import (
    check_zone,
    compute_family_analytics,
    compute_outcome_metrics,
    family_zone,
    to_local,
    week_start_for,
)
from .models import (
    Account,
    AccountRole,
    AssignedTask,
    Child,
    CoachInsight,
    Family,
    FamilyQuest,
    GoalStatus,
    InterestSetting,
    LedgerUnit,
    QuestStatus,
    Reward,
    RewardStatus,
    SavingsGoal,
    TaskEvent,
    TaskStatus,
    TaskTemplate,
    utcnow,
)
from .notifications import (
    EmailDispatcher,
    get_email_dispatcher,
    notify_task_submitted,
    send_daily_summaries,
    task_submitted_recipients,
)
from .premium import get_premium_status, require_premium
from .quests import create_quest, read_quest
from .realtime import broker, child_topic, family_topic, publish_change
from .session_mode import (
    CHILD_HOME,
    LOGIN,
    PROFILE_PICKER,
    SessionContext,
    clear_child_context,
    clear_session,
    enter_child_context,
    exit_child_context,
    resolve_redirect,
)
from .tasks import (
    SubmitOutcome,
    approve_task,
    approve_tasks,
    assign_task,
    assign_template,
    get_child,
    get_task,
    list_child_tasks,
    list_review_queue,
    reject_task,
    soft_delete_child,
    soft_delete_task,
    submit_task,
)

logger = logging.getLogger(__name__)

MIN_PASSWORD_LENGTH = 8


@asynccontextmanager
async def lifespan(_: FastAPI):
    init_db()
    yield


app = FastAPI(title="Task For Time", lifespan=lifespan)


@app.middleware("http")
async def child_mode_guard(request: Request, call_next):
    target = resolve_redirect(request.url.path, SessionContext.from_session(request.session))
    if target:
        return RedirectResponse(target, status_code=303)
    return await call_next(request)


# Added last so it wraps the guard and the session is populated first.
app.add_middleware(
    SessionMiddleware,
    secret_key=get_settings().session_secret,
    session_cookie="taskfortime_session",
)


@app.exception_handler(ParentAccessRequired)
async def parent_access_handler(request: Request, exc: ParentAccessRequired):
    return RedirectResponse(CHILD_HOME, status_code=303)


@app.exception_handler(ChildContextError)
async def child_context_handler(request: Request, exc: ChildContextError):
    context = SessionContext.from_session(request.session)
    if context.is_child_account:
        clear_session(request.session)
    elif context.active_child_id is None:
        return RedirectResponse(PROFILE_PICKER, status_code=303)
    else:
        clear_child_context(request.session)
    logger.info("Stale child context for account %s, forcing sign-in", context.account_id)
    return RedirectResponse(LOGIN, status_code=303)


@app.exception_handler(InvalidTransitionError)
async def invalid_transition_handler(request: Request, exc: InvalidTransitionError):
    return JSONResponse({"detail": exc.message}, status_code=409)


@app.exception_handler(InsufficientFundsError)
async def insufficient_funds_handler(request: Request, exc: InsufficientFundsError):
    return JSONResponse(
        {"detail": exc.message, "balance": exc.balance, "required": exc.required},
        status_code=409,
    )


@app.exception_handler(GoalClosedError)
@app.exception_handler(RewardUnavailableError)
async def unavailable_handler(request: Request, exc):
    return JSONResponse({"detail": exc.message}, status_code=409)


@app.exception_handler(TaskNotFoundError)
@app.exception_handler(ChildNotFoundError)
@app.exception_handler(GoalNotFoundError)
async def not_found_handler(request: Request, exc):
    return JSONResponse({"detail": exc.message}, status_code=404)


@app.exception_handler(PinRateLimitedError)
async def pin_rate_limited_handler(request: Request, exc: PinRateLimitedError):
    return JSONResponse({"detail": exc.message}, status_code=429)


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    return JSONResponse({"detail": str(exc)}, status_code=400)


def get_recommender(settings: Settings = Depends(get_settings)) -> Recommender:
    return build_recommender(settings)


def flash(request: Request, message: str, category: str = "info"):
    messages = request.session.get("flash", [])
    messages.append({"message": message, "category": category})
    request.session["flash"] = messages


def pop_flash(request: Request):
    messages = request.session.pop("flash", [])
    return messages


def account_summary(account: Optional[Account]) -> Optional[dict]:
    if not account:
        return None
    return {
        "id": account.id,
        "family_id": account.family_id,
        "email": account.email,
        "display_name": account.display_name,
        "role": account.role.value,
        "child_id": account.child_id,
    }


def child_summary(session: Session, child: Child) -> dict:
    return {
        "id": child.id,
        "name": child.name,
        "xp": child.xp,
        "level": child.level,
        "has_pin": bool(child.pin_hash),
        "minutes": get_balance(session, child.id, LedgerUnit.minutes),
        "stars": get_balance(session, child.id, LedgerUnit.stars),
    }


def build_context(request: Request, account: Optional[Account], extra: Optional[dict] = None) -> dict:
    context = {
        "account": account_summary(account),
        "child_mode": SessionContext.from_session(request.session).is_child_mode,
        "flash": pop_flash(request),
    }
    if extra:
        context.update(extra)
    return context


def live_children(session: Session, family_id: int) -> List[Child]:
    return list(
        session.exec(
            select(Child)
            .where(Child.family_id == family_id, Child.deleted_at.is_(None))
            .order_by(Child.created_at, Child.id)
        ).all()
    )


def get_family(session: Session, family_id: int) -> Family:
    return session.get(Family, family_id)


def get_reward(session: Session, family_id: int, reward_id: int) -> Reward:
    reward = session.exec(
        select(Reward).where(Reward.id == reward_id, Reward.family_id == family_id)
    ).first()
    if not reward:
        raise RewardUnavailableError()
    return reward


def get_template(session: Session, family_id: int, template_id: int) -> TaskTemplate:
    template = session.exec(
        select(TaskTemplate).where(
            TaskTemplate.id == template_id, TaskTemplate.family_id == family_id
        )
    ).first()
    if not template:
        raise HTTPException(status_code=404, detail="Template not found")
    return template


def verify_cron(request: Request, settings: Settings = Depends(get_settings)):
    if not settings.cron_secret:
        return
    if request.headers.get("authorization") != f"Bearer {settings.cron_secret}":
        raise HTTPException(status_code=401, detail="Unauthorized")


# -- accounts -----------------------------------------------------------------


@app.get("/register")
def register_form(request: Request):
    return build_context(request, None)


@app.post("/register")
def register(
    request: Request,
    display_name: str = Form(...),
    email: str = Form(...),
    password: str = Form(...),
    family_name: Optional[str] = Form(None),
    session: Session = Depends(get_session),
    settings: Settings = Depends(get_settings),
):
    if len(password) < MIN_PASSWORD_LENGTH:
        flash(request, f"Password must be at least {MIN_PASSWORD_LENGTH} characters", "error")
        return RedirectResponse("/register", status_code=303)
    if find_login_account(session, email):
        flash(request, "An account with this email already exists", "error")
        return RedirectResponse("/register", status_code=303)
    account = register_family(
        session,
        settings,
        family_name=family_name or f"{display_name}'s Family",
        email=email,
        display_name=display_name,
        password=password,
    )
    login_account(request, account)
    flash(request, "Welcome to Task For Time")
    return RedirectResponse("/parent/dashboard", status_code=303)


@app.get("/login")
def login_form(request: Request):
    return build_context(request, None)


@app.post("/login")
def login(
    request: Request,
    email: str = Form(...),
    password: str = Form(...),
    session: Session = Depends(get_session),
):
    account = find_login_account(session, email)
    if not account or not verify_password(password, account.hashed_password):
        flash(request, "Invalid credentials", "error")
        return RedirectResponse(LOGIN, status_code=303)
    login_account(request, account)
    if account.role == AccountRole.child:
        enter_child_context(request.session, account.child_id)
        return RedirectResponse(CHILD_HOME, status_code=303)
    return RedirectResponse(PROFILE_PICKER, status_code=303)


@app.post("/logout")
def logout(request: Request):
    logout_account(request)
    return RedirectResponse(LOGIN, status_code=303)


# -- profiles and child mode ----------------------------------------------------


@app.get("/choose-profile")
def choose_profile(
    request: Request,
    session: Session = Depends(get_session),
    account: Account = Depends(require_account),
):
    if account.role == AccountRole.child:
        return RedirectResponse(CHILD_HOME, status_code=303)
    children = [
        {"id": child.id, "name": child.name, "has_pin": bool(child.pin_hash)}
        for child in live_children(session, account.family_id)
    ]
    return build_context(request, account, {"children": children})


@app.post("/profiles/{child_id}/enter")
def enter_profile(
    request: Request,
    child_id: int,
    pin: Optional[str] = Form(None),
    session: Session = Depends(get_session),
    account: Account = Depends(require_parent),
):
    child = get_child(session, account.family_id, child_id)
    if child.pin_hash and not verify_child_pin(session, child, pin or ""):
        flash(request, "Incorrect PIN", "error")
        return RedirectResponse(PROFILE_PICKER, status_code=303)
    enter_child_context(request.session, child.id)
    return RedirectResponse(CHILD_HOME, status_code=303)


@app.post("/child/exit-mode")
def exit_child_mode(request: Request, account: Account = Depends(require_account)):
    context = exit_child_context(request.session)
    if context.is_child_mode:
        return RedirectResponse(CHILD_HOME, status_code=303)
    return RedirectResponse(PROFILE_PICKER, status_code=303)


# -- child ----------------------------------------------------------------------


@app.get("/child/dashboard")
def child_dashboard(
    request: Request,
    session: Session = Depends(get_session),
    account: Account = Depends(require_account),
    child: Child = Depends(get_active_child),
    context: SessionContext = Depends(get_session_context),
):
    tasks = list_child_tasks(session, child)
    rewards = session.exec(
        select(Reward).where(
            Reward.family_id == child.family_id, Reward.status == RewardStatus.available
        )
    ).all()
    goals = session.exec(
        select(SavingsGoal).where(
            SavingsGoal.child_id == child.id, SavingsGoal.status == GoalStatus.active
        )
    ).all()
    return build_context(
        request,
        account,
        {
            "child": child_summary(session, child),
            "can_exit_child_mode": context.can_exit_child_mode,
            "todo": [t.model_dump(mode="json") for t in tasks if t.status in (TaskStatus.active, TaskStatus.rejected)],
            "waiting": [t.model_dump(mode="json") for t in tasks if t.status == TaskStatus.ready_for_review],
            "done": [t.model_dump(mode="json") for t in tasks if t.status == TaskStatus.approved],
            "rewards": [r.model_dump(mode="json") for r in rewards],
            "goals": [g.model_dump(mode="json") for g in goals],
            "quest": read_quest(session, child.family_id),
        },
    )


@app.post("/child/tasks/{task_id}/submit")
def submit_child_task(
    request: Request,
    task_id: int,
    background_tasks: BackgroundTasks,
    session: Session = Depends(get_session),
    account: Account = Depends(require_account),
    child: Child = Depends(get_active_child),
    dispatcher: EmailDispatcher = Depends(get_email_dispatcher),
    settings: Settings = Depends(get_settings),
):
    try:
        outcome, task = submit_task(session, child, task_id, account.id)
    except TaskNotFoundError:
        flash(request, "That task is no longer available", "error")
        return RedirectResponse(CHILD_HOME, status_code=303)
    if outcome == SubmitOutcome.submitted:
        recipients = [parent.email for parent in task_submitted_recipients(session, child.family_id)]
        if recipients:
            background_tasks.add_task(
                notify_task_submitted,
                dispatcher,
                recipients,
                child_name=child.name,
                task_title=task.title,
                reward_minutes=task.reward_minutes,
                app_url=settings.app_url,
            )
        publish_change("assigned_task", "submitted", child.family_id, child.id)
    return RedirectResponse(f"/child/task-complete/{task.id}", status_code=303)


@app.get("/child/task-complete/{task_id}")
def task_complete(
    request: Request,
    task_id: int,
    session: Session = Depends(get_session),
    account: Account = Depends(require_account),
    child: Child = Depends(get_active_child),
):
    task = get_task(session, child.family_id, task_id)
    if task.child_id != child.id:
        raise TaskNotFoundError()
    return build_context(
        request,
        account,
        {
            "task": task.model_dump(mode="json"),
            "child": child_summary(session, child),
            "waiting_for_approval": task.status == TaskStatus.ready_for_review,
        },
    )


@app.get("/child/rewards")
def child_rewards(
    request: Request,
    session: Session = Depends(get_session),
    account: Account = Depends(require_account),
    child: Child = Depends(get_active_child),
):
    balance = get_balance(session, child.id, LedgerUnit.minutes)
    rewards = session.exec(
        select(Reward).where(
            Reward.family_id == child.family_id, Reward.status == RewardStatus.available
        ).order_by(Reward.cost_minutes)
    ).all()
    return build_context(
        request,
        account,
        {
            "balance": balance,
            "rewards": [
                dict(reward.model_dump(mode="json"), affordable=reward.cost_minutes <= balance)
                for reward in rewards
            ],
        },
    )


@app.post("/child/rewards/{reward_id}/redeem")
def redeem_reward(
    request: Request,
    reward_id: int,
    session: Session = Depends(get_session),
    account: Account = Depends(require_account),
    child: Child = Depends(get_active_child),
):
    reward = get_reward(session, child.family_id, reward_id)
    redeem(session, child, reward)
    publish_change("ledger_entry", "redeemed", child.family_id, child.id)
    flash(request, f"Enjoy your {reward.title}!")
    return RedirectResponse("/child/rewards", status_code=303)


@app.get("/child/stars")
def child_stars(
    request: Request,
    session: Session = Depends(get_session),
    account: Account = Depends(require_account),
    child: Child = Depends(get_active_child),
):
    setting = session.get(InterestSetting, child.id)
    goals = session.exec(select(SavingsGoal).where(SavingsGoal.child_id == child.id)).all()
    return build_context(
        request,
        account,
        {
            "stars": get_balance(session, child.id, LedgerUnit.stars),
            "weekly_rate": setting.weekly_rate if setting else 0,
            "history": [
                entry.model_dump(mode="json")
                for entry in ledger_history(session, child.id, LedgerUnit.stars)
            ],
            "goals": [goal.model_dump(mode="json") for goal in goals],
        },
    )


@app.post("/child/goals")
def create_goal(
    request: Request,
    title: str = Form(...),
    target_stars: int = Form(...),
    session: Session = Depends(get_session),
    account: Account = Depends(require_account),
    child: Child = Depends(get_active_child),
):
    create_savings_goal(session, child, title, target_stars)
    publish_change("savings_goal", "created", child.family_id, child.id)
    return RedirectResponse("/child/stars", status_code=303)


@app.post("/child/goals/{goal_id}/deposit")
def deposit_goal(
    request: Request,
    goal_id: int,
    stars: int = Form(...),
    session: Session = Depends(get_session),
    account: Account = Depends(require_account),
    child: Child = Depends(get_active_child),
):
    goal = deposit_to_goal(session, child, goal_id, stars)
    if goal.status == GoalStatus.completed:
        flash(request, f"You reached your goal: {goal.title}!")
    publish_change("savings_goal", "deposit", child.family_id, child.id)
    return RedirectResponse("/child/stars", status_code=303)


@app.get("/child/quest")
def child_quest(
    session: Session = Depends(get_session),
    child: Child = Depends(get_active_child),
):
    return read_quest(session, child.family_id) or {"quest": None}


# -- parent ---------------------------------------------------------------------


@app.get("/parent/dashboard")
def parent_dashboard(
    request: Request,
    session: Session = Depends(get_session),
    account: Account = Depends(require_parent),
    settings: Settings = Depends(get_settings),
):
    children = live_children(session, account.family_id)
    premium = get_premium_status(account, settings)
    return build_context(
        request,
        account,
        {
            "children": [child_summary(session, child) for child in children],
            "pending_approvals": len(list_review_queue(session, account.family_id)),
            "quest": read_quest(session, account.family_id),
            "premium": {
                "active": premium.is_active,
                "reason": premium.reason,
                "days_left": premium.days_left,
            },
        },
    )


@app.post("/parent/children")
def create_child(
    request: Request,
    name: str = Form(...),
    pin: Optional[str] = Form(None),
    session: Session = Depends(get_session),
    account: Account = Depends(require_parent),
):
    child = Child(family_id=account.family_id, name=name.strip())
    if pin:
        set_child_pin(child, pin)
    session.add(child)
    session.commit()
    session.refresh(child)
    publish_change("child", "created", account.family_id, child.id)
    flash(request, f"Added {child.name}")
    return RedirectResponse(f"/parent/children/{child.id}", status_code=303)


@app.get("/parent/children/{child_id}")
def child_detail(
    request: Request,
    child_id: int,
    session: Session = Depends(get_session),
    account: Account = Depends(require_parent),
):
    child = get_child(session, account.family_id, child_id)
    setting = session.get(InterestSetting, child.id)
    return build_context(
        request,
        account,
        {
            "child": child_summary(session, child),
            "weekly_rate": setting.weekly_rate if setting else 0,
            "tasks": [t.model_dump(mode="json") for t in list_child_tasks(session, child)],
        },
    )


@app.post("/parent/children/{child_id}/delete")
def delete_child(
    request: Request,
    child_id: int,
    session: Session = Depends(get_session),
    account: Account = Depends(require_parent),
):
    child = soft_delete_child(session, account.family_id, child_id)
    publish_change("child", "deleted", account.family_id, child.id)
    flash(request, f"Removed {child.name}")
    return RedirectResponse("/parent/dashboard", status_code=303)


@app.post("/parent/children/{child_id}/pin")
def update_child_pin(
    request: Request,
    child_id: int,
    pin: str = Form(...),
    session: Session = Depends(get_session),
    account: Account = Depends(require_parent),
):
    child = get_child(session, account.family_id, child_id)
    set_child_pin(child, pin)
    session.add(child)
    session.commit()
    flash(request, "PIN updated")
    return RedirectResponse(f"/parent/children/{child.id}", status_code=303)


@app.post("/parent/children/{child_id}/login")
def create_child_login(
    request: Request,
    child_id: int,
    email: str = Form(...),
    password: str = Form(...),
    session: Session = Depends(get_session),
    account: Account = Depends(require_parent),
):
    child = get_child(session, account.family_id, child_id)
    if find_login_account(session, email):
        flash(request, "An account with this email already exists", "error")
        return RedirectResponse(f"/parent/children/{child.id}", status_code=303)
    session.add(
        Account(
            family_id=account.family_id,
            email=email.strip().lower(),
            display_name=child.name,
            hashed_password=hash_password(password),
            role=AccountRole.child,
            child_id=child.id,
            notify_task_approvals=False,
        )
    )
    session.commit()
    flash(request, f"{child.name} can now sign in")
    return RedirectResponse(f"/parent/children/{child.id}", status_code=303)


@app.post("/parent/children/{child_id}/bonus")
def time_bonus(
    request: Request,
    child_id: int,
    minutes: int = Form(...),
    reason: Optional[str] = Form(None),
    session: Session = Depends(get_session),
    account: Account = Depends(require_parent),
):
    child = get_child(session, account.family_id, child_id)
    grant_time_bonus(session, child, minutes, reason or "")
    publish_change("ledger_entry", "bonus", account.family_id, child.id)
    flash(request, f"Gave {child.name} {minutes} bonus minutes")
    return RedirectResponse(f"/parent/children/{child.id}", status_code=303)


@app.post("/parent/children/{child_id}/stars")
def star_bonus(
    request: Request,
    child_id: int,
    stars: int = Form(...),
    reason: Optional[str] = Form(None),
    session: Session = Depends(get_session),
    account: Account = Depends(require_parent),
):
    child = get_child(session, account.family_id, child_id)
    grant_stars(session, child, stars, reason or "")
    publish_change("ledger_entry", "stars", account.family_id, child.id)
    return RedirectResponse(f"/parent/children/{child.id}", status_code=303)


@app.post("/parent/children/{child_id}/stars/reset")
def star_reset(
    request: Request,
    child_id: int,
    session: Session = Depends(get_session),
    account: Account = Depends(require_parent),
):
    child = get_child(session, account.family_id, child_id)
    if reset_stars(session, child):
        publish_change("ledger_entry", "stars_reset", account.family_id, child.id)
    return RedirectResponse(f"/parent/children/{child.id}", status_code=303)


@app.post("/parent/children/{child_id}/interest")
def interest_rate(
    request: Request,
    child_id: int,
    weekly_rate: int = Form(...),
    session: Session = Depends(get_session),
    account: Account = Depends(require_parent),
):
    child = get_child(session, account.family_id, child_id)
    set_interest_rate(session, child, weekly_rate)
    return RedirectResponse(f"/parent/children/{child.id}", status_code=303)


@app.get("/parent/templates")
def list_templates(
    request: Request,
    session: Session = Depends(get_session),
    account: Account = Depends(require_parent),
):
    templates = session.exec(
        select(TaskTemplate).where(
            TaskTemplate.family_id == account.family_id, TaskTemplate.active == True  # noqa: E712
        )
    ).all()
    return build_context(request, account, {"templates": [t.model_dump(mode="json") for t in templates]})


@app.post("/parent/templates")
def create_template(
    request: Request,
    title: str = Form(...),
    reward_minutes: int = Form(...),
    description: Optional[str] = Form(None),
    category: Optional[str] = Form(None),
    requires_approval: bool = Form(True),
    session: Session = Depends(get_session),
    account: Account = Depends(require_parent),
):
    if reward_minutes < 0:
        raise ValueError("reward_minutes must be zero or more")
    template = TaskTemplate(
        family_id=account.family_id,
        title=title,
        description=description,
        category=category,
        reward_minutes=reward_minutes,
        requires_approval=requires_approval,
    )
    session.add(template)
    session.commit()
    return RedirectResponse("/parent/templates", status_code=303)


@app.post("/parent/templates/{template_id}/delete")
def delete_template(
    request: Request,
    template_id: int,
    session: Session = Depends(get_session),
    account: Account = Depends(require_parent),
):
    template = get_template(session, account.family_id, template_id)
    template.active = False
    session.add(template)
    session.commit()
    return RedirectResponse("/parent/templates", status_code=303)


@app.post("/parent/templates/{template_id}/assign")
def assign_from_template(
    request: Request,
    template_id: int,
    child_id: int = Form(...),
    session: Session = Depends(get_session),
    account: Account = Depends(require_parent),
):
    template = get_template(session, account.family_id, template_id)
    child = get_child(session, account.family_id, child_id)
    task = assign_template(session, template, child)
    publish_change("assigned_task", "created", account.family_id, child.id)
    return RedirectResponse(f"/parent/tasks/{task.id}", status_code=303)


@app.get("/parent/tasks")
def list_tasks(
    request: Request,
    status: Optional[TaskStatus] = None,
    session: Session = Depends(get_session),
    account: Account = Depends(require_parent),
):
    statement = (
        select(AssignedTask, Child)
        .where(AssignedTask.child_id == Child.id)
        .where(
            AssignedTask.family_id == account.family_id,
            AssignedTask.deleted_at.is_(None),
            Child.deleted_at.is_(None),
        )
    )
    if status:
        statement = statement.where(AssignedTask.status == status)
    rows = session.exec(statement.order_by(AssignedTask.created_at.desc())).all()
    return build_context(
        request,
        account,
        {"tasks": [dict(task.model_dump(mode="json"), child_name=child.name) for task, child in rows]},
    )


@app.post("/parent/tasks")
def create_task(
    request: Request,
    child_id: int = Form(...),
    title: str = Form(...),
    reward_minutes: int = Form(...),
    description: Optional[str] = Form(None),
    category: Optional[str] = Form(None),
    requires_approval: bool = Form(True),
    session: Session = Depends(get_session),
    account: Account = Depends(require_parent),
):
    child = get_child(session, account.family_id, child_id)
    task = assign_task(
        session,
        child,
        title=title,
        reward_minutes=reward_minutes,
        description=description,
        category=category,
        requires_approval=requires_approval,
    )
    publish_change("assigned_task", "created", account.family_id, child.id)
    return RedirectResponse(f"/parent/tasks/{task.id}", status_code=303)


@app.post("/parent/tasks/approve-bulk")
def bulk_approve(
    request: Request,
    task_ids: List[int] = Form(...),
    session: Session = Depends(get_session),
    account: Account = Depends(require_parent),
):
    results = approve_tasks(session, account.family_id, task_ids, account.id)
    approved = sum(1 for ok in results.values() if ok)
    if approved:
        publish_change("assigned_task", "approved", account.family_id)
    flash(request, f"Approved {approved} of {len(results)} tasks")
    return RedirectResponse("/parent/approvals", status_code=303)


@app.get("/parent/tasks/{task_id}")
def task_detail(
    request: Request,
    task_id: int,
    session: Session = Depends(get_session),
    account: Account = Depends(require_parent),
):
    task = get_task(session, account.family_id, task_id)
    events = session.exec(
        select(TaskEvent)
        .where(TaskEvent.assigned_task_id == task.id)
        .order_by(TaskEvent.created_at, TaskEvent.id)
    ).all()
    return build_context(
        request,
        account,
        {"task": task.model_dump(mode="json"), "events": [e.model_dump(mode="json") for e in events]},
    )


@app.post("/parent/tasks/{task_id}/approve")
def approve(
    request: Request,
    task_id: int,
    session: Session = Depends(get_session),
    account: Account = Depends(require_parent),
):
    task = approve_task(session, account.family_id, task_id, account.id)
    publish_change("assigned_task", "approved", account.family_id, task.child_id)
    flash(request, f"Approved: +{task.reward_minutes} minutes")
    return RedirectResponse("/parent/approvals", status_code=303)


@app.post("/parent/tasks/{task_id}/reject")
def reject(
    request: Request,
    task_id: int,
    note: Optional[str] = Form(None),
    session: Session = Depends(get_session),
    account: Account = Depends(require_parent),
):
    task = reject_task(session, account.family_id, task_id, account.id, note)
    publish_change("assigned_task", "rejected", account.family_id, task.child_id)
    flash(request, "Sent back for another try")
    return RedirectResponse("/parent/approvals", status_code=303)


@app.post("/parent/tasks/{task_id}/delete")
def delete_task(
    request: Request,
    task_id: int,
    session: Session = Depends(get_session),
    account: Account = Depends(require_parent),
):
    task = soft_delete_task(session, account.family_id, task_id)
    publish_change("assigned_task", "deleted", account.family_id, task.child_id)
    return RedirectResponse("/parent/tasks", status_code=303)


@app.get("/parent/approvals")
def approvals(
    request: Request,
    session: Session = Depends(get_session),
    account: Account = Depends(require_parent),
):
    queue = list_review_queue(session, account.family_id)
    return build_context(
        request,
        account,
        {
            "queue": [
                dict(task.model_dump(mode="json"), child_name=child.name) for task, child in queue
            ]
        },
    )


@app.get("/parent/rewards")
def list_rewards(
    request: Request,
    session: Session = Depends(get_session),
    account: Account = Depends(require_parent),
):
    rewards = session.exec(select(Reward).where(Reward.family_id == account.family_id)).all()
    return build_context(request, account, {"rewards": [r.model_dump(mode="json") for r in rewards]})


@app.post("/parent/rewards")
def create_reward(
    request: Request,
    title: str = Form(...),
    cost_minutes: int = Form(...),
    icon: Optional[str] = Form(None),
    session: Session = Depends(get_session),
    account: Account = Depends(require_parent),
):
    if cost_minutes < 0:
        raise ValueError("cost_minutes must be zero or more")
    session.add(Reward(family_id=account.family_id, title=title, cost_minutes=cost_minutes, icon=icon))
    session.commit()
    publish_change("reward", "created", account.family_id)
    return RedirectResponse("/parent/rewards", status_code=303)


@app.post("/parent/rewards/{reward_id}/toggle")
def toggle_reward(
    request: Request,
    reward_id: int,
    session: Session = Depends(get_session),
    account: Account = Depends(require_parent),
):
    reward = get_reward(session, account.family_id, reward_id)
    reward.status = (
        RewardStatus.unavailable if reward.status == RewardStatus.available else RewardStatus.available
    )
    session.add(reward)
    session.commit()
    publish_change("reward", "updated", account.family_id)
    return RedirectResponse("/parent/rewards", status_code=303)


@app.get("/parent/ledger/{child_id}")
def child_ledger(
    request: Request,
    child_id: int,
    unit: Optional[LedgerUnit] = None,
    session: Session = Depends(get_session),
    account: Account = Depends(require_parent),
):
    child = get_child(session, account.family_id, child_id)
    return build_context(
        request,
        account,
        {
            "child": child_summary(session, child),
            "entries": [e.model_dump(mode="json") for e in ledger_history(session, child.id, unit)],
            "family_minutes": get_family_balances(session, account.family_id),
        },
    )


@app.get("/parent/quests")
def list_quests(
    request: Request,
    session: Session = Depends(get_session),
    account: Account = Depends(require_parent),
):
    quests = session.exec(
        select(FamilyQuest)
        .where(FamilyQuest.family_id == account.family_id)
        .order_by(FamilyQuest.created_at.desc())
    ).all()
    return build_context(
        request,
        account,
        {
            "quests": [q.model_dump(mode="json") for q in quests],
            "current": read_quest(session, account.family_id),
        },
    )


@app.post("/parent/quests")
def new_quest(
    request: Request,
    title: str = Form(...),
    target_completion_rate: float = Form(...),
    start_date: date = Form(...),
    end_date: date = Form(...),
    reward_description: Optional[str] = Form(None),
    session: Session = Depends(get_session),
    account: Account = Depends(require_parent),
):
    create_quest(
        session,
        account.family_id,
        title=title,
        target_completion_rate=target_completion_rate,
        start_date=start_date,
        end_date=end_date,
        reward_description=reward_description,
    )
    publish_change("family_quest", "created", account.family_id)
    return RedirectResponse("/parent/quests", status_code=303)


@app.post("/parent/quests/{quest_id}/cancel")
def cancel_quest(
    request: Request,
    quest_id: int,
    session: Session = Depends(get_session),
    account: Account = Depends(require_parent),
):
    quest = session.exec(
        select(FamilyQuest).where(
            FamilyQuest.id == quest_id, FamilyQuest.family_id == account.family_id
        )
    ).first()
    if not quest:
        raise HTTPException(status_code=404, detail="Quest not found")
    if quest.status == QuestStatus.active:
        quest.status = QuestStatus.cancelled
        session.add(quest)
        session.commit()
        publish_change("family_quest", "cancelled", account.family_id)
    return RedirectResponse("/parent/quests", status_code=303)


@app.get("/parent/coaching")
def coaching_history(
    request: Request,
    session: Session = Depends(get_session),
    account: Account = Depends(require_premium),
):
    insights = session.exec(
        select(CoachInsight)
        .where(CoachInsight.family_id == account.family_id)
        .order_by(CoachInsight.week_start.desc(), CoachInsight.id.desc())
        .limit(12)
    ).all()
    return build_context(request, account, {"insights": [i.model_dump(mode="json") for i in insights]})


@app.post("/parent/coaching/generate")
def generate_coaching(
    child_id: Optional[int] = Form(None),
    session: Session = Depends(get_session),
    account: Account = Depends(require_premium),
    settings: Settings = Depends(get_settings),
    recommender: Recommender = Depends(get_recommender),
):
    family = get_family(session, account.family_id)
    if child_id is not None:
        get_child(session, account.family_id, child_id)
    now = utcnow()
    signals, inputs = compute_coaching_signals(
        session,
        family.id,
        child_id=child_id,
        lookback_days=settings.coaching_lookback_days,
        tz=family.timezone,
        now=now,
    )
    metrics = None
    if child_id is not None:
        today = to_local(now, family_zone(family.timezone)).date()
        metrics = compute_outcome_metrics(
            session,
            family.id,
            child_id,
            today - timedelta(days=settings.coaching_lookback_days),
            today,
            family.timezone,
        )
    insight = recommender.recommend(signals, metrics)
    return dict(coaching_payload(signals, inputs, insight, metrics), success=True)


@app.get("/parent/outcomes/{child_id}")
def outcomes(
    request: Request,
    child_id: int,
    start: Optional[date] = None,
    end: Optional[date] = None,
    session: Session = Depends(get_session),
    account: Account = Depends(require_parent),
):
    child = get_child(session, account.family_id, child_id)
    family = get_family(session, account.family_id)
    end = end or to_local(utcnow(), family_zone(family.timezone)).date()
    start = start or end - timedelta(days=13)
    if end < start:
        raise ValueError("end must be on or after start")
    metrics = compute_outcome_metrics(session, family.id, child.id, start, end, family.timezone)
    return build_context(request, account, {"metrics": metrics.as_dict()})


@app.get("/parent/analytics")
def analytics(
    request: Request,
    range_name: str = Query("this_week", alias="range"),
    start: Optional[date] = None,
    end: Optional[date] = None,
    child_id: Optional[int] = None,
    leaderboard: str = "minutes_earned",
    session: Session = Depends(get_session),
    account: Account = Depends(require_premium),
):
    family = get_family(session, account.family_id)
    if child_id is not None:
        get_child(session, family.id, child_id)
    today = to_local(utcnow(), family_zone(family.timezone)).date()
    report = compute_family_analytics(
        session,
        family.id,
        today,
        range_name,
        start=start,
        end=end,
        child_id=child_id,
        leaderboard_metric=leaderboard,
        tz=family.timezone,
    )
    return build_context(request, account, {"analytics": report.as_dict()})


@app.get("/settings/notifications")
def notification_settings(request: Request, account: Account = Depends(require_parent)):
    return build_context(
        request,
        account,
        {
            "notify_task_approvals": account.notify_task_approvals,
            "notify_daily_summary": account.notify_daily_summary,
        },
    )


@app.post("/settings/notifications")
def update_notifications(
    request: Request,
    notify_task_approvals: Optional[str] = Form(None),
    notify_daily_summary: Optional[str] = Form(None),
    session: Session = Depends(get_session),
    account: Account = Depends(require_parent),
):
    account.notify_task_approvals = bool(notify_task_approvals)
    account.notify_daily_summary = bool(notify_daily_summary)
    session.add(account)
    session.commit()
    flash(request, "Notification preferences saved")
    return RedirectResponse("/settings/notifications", status_code=303)


@app.post("/settings/family")
def update_family(
    request: Request,
    name: Optional[str] = Form(None),
    timezone: Optional[str] = Form(None),
    session: Session = Depends(get_session),
    account: Account = Depends(require_parent),
):
    family = get_family(session, account.family_id)
    if name:
        family.name = name.strip()
    if timezone:
        check_zone(timezone)
        family.timezone = timezone
    session.add(family)
    session.commit()
    flash(request, "Family settings saved")
    return RedirectResponse("/parent/dashboard", status_code=303)


# -- scheduled jobs -------------------------------------------------------------


@app.get("/cron/daily-summary", dependencies=[Depends(verify_cron)])
def cron_daily_summary(
    session: Session = Depends(get_session),
    dispatcher: EmailDispatcher = Depends(get_email_dispatcher),
):
    return send_daily_summaries(session, dispatcher, utcnow().date())


@app.get("/cron/weekly-insights", dependencies=[Depends(verify_cron)])
def cron_weekly_insights(session: Session = Depends(get_session)):
    last_week = week_start_for(utcnow().date()) - timedelta(days=7)
    return store_weekly_insights(session, last_week)


@app.get("/cron/weekly-interest", dependencies=[Depends(verify_cron)])
def cron_weekly_interest(session: Session = Depends(get_session)):
    entries = apply_weekly_interest(session)
    for entry in entries:
        publish_change("ledger_entry", "interest", entry.family_id, entry.child_id)
    return {"applied": len(entries)}


# -- misc -----------------------------------------------------------------------


@app.get("/events/stream")
async def event_stream(
    account: Account = Depends(require_account),
    context: SessionContext = Depends(get_session_context),
):
    topics = [family_topic(account.family_id)]
    child_id = account.child_id if account.role == AccountRole.child else context.active_child_id
    if child_id is not None:
        topics = [child_topic(child_id)]
    return StreamingResponse(
        broker.stream(topics),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache"},
    )


@app.get("/health")
def health():
    return {"status": "ok"}
