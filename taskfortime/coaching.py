"""Coaching signals and recommendations.

Signals are detected deterministically from task timing data. A recommender
turns them into one insight. ``DeterministicRecommender`` is always
available; ``GeneratedRecommender`` asks a text-generation backend to phrase
the insight and falls back to the deterministic one on any failure.
"""
from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol, Tuple

from openai import OpenAI
from pydantic import BaseModel
from sqlmodel import Session

from .config import Settings
from .metrics import (
    OutcomeMetrics,
    SignalInputs,
    compute_signal_inputs,
    load_task_samples,
    to_local,
    family_zone,
    window_bounds,
)
from .models import utcnow

logger = logging.getLogger(__name__)

EVENING_SLUMP_POINTS = 25
APPROVAL_DRAG_MINUTES = 60
OVERLOAD_RATIO = 1.3
WEEKEND_REGRESSION_POINTS = 20

# Detection order doubles as the tie-break order.
SIGNAL_IMPACT: Dict[str, int] = {
    "evening_slump": 30,
    "approval_drag": 25,
    "overload": 35,
    "weekend_regression": 20,
}
MAX_IMPACT = 100

ALLOWED_ACTIONS = (
    "adjust schedule",
    "split tasks",
    "reduce load",
    "increase frequency/reduce reward",
    "add auto-approval",
    "add first-then rule",
    "add cutoff times",
    "add catch-up day",
)

SYSTEM_PROMPT = (
    "You are a behavior change coach for families. Provide data-driven, actionable "
    "recommendations. Always explain WHY with data. Use the strict template: Observation "
    "(data-backed), Diagnosis (why), Recommendation (actionable), Expected result, Next check "
    "(metric to watch). No generic advice. No punishments or shame language."
)

SECTIONS = (
    ("observation", "OBSERVATION"),
    ("diagnosis", "DIAGNOSIS"),
    ("recommendation", "RECOMMENDATION"),
    ("expected_result", "EXPECTED RESULT"),
    ("next_check", "NEXT CHECK"),
)


class CoachingInsight(BaseModel):
    observation: str
    diagnosis: str
    recommendation: str
    expected_result: str
    next_check: str
    impact_score: int
    signal: Optional[str] = None
    source: str = "deterministic"


@dataclass(frozen=True)
class Signals:
    """Magnitudes of the signals that fired; ``None`` means not detected."""

    evening_slump: Optional[int] = None
    approval_drag: Optional[int] = None
    overload: Optional[int] = None
    weekend_regression: Optional[int] = None

    def fired(self) -> List[Tuple[str, int]]:
        return [
            (name, getattr(self, name))
            for name in SIGNAL_IMPACT
            if getattr(self, name) is not None
        ]

    def as_dict(self) -> Dict[str, int]:
        return dict(self.fired())

    @property
    def combined_impact(self) -> int:
        return min(sum(SIGNAL_IMPACT[name] for name, _ in self.fired()), MAX_IMPACT)


def detect_signals(inputs: SignalInputs) -> Signals:
    found: Dict[str, int] = {}

    if inputs.daytime_rate is not None and inputs.evening_rate is not None:
        gap = inputs.daytime_rate - inputs.evening_rate
        if gap >= EVENING_SLUMP_POINTS:
            found["evening_slump"] = round(gap)

    if inputs.approval_latency_median is not None:
        if inputs.approval_latency_median > APPROVAL_DRAG_MINUTES:
            found["approval_drag"] = round(inputs.approval_latency_median)

    if inputs.median_daily_count:
        if inputs.today_count >= inputs.median_daily_count * OVERLOAD_RATIO:
            found["overload"] = round((inputs.today_count / inputs.median_daily_count - 1) * 100)

    if inputs.weekday_rate is not None and inputs.weekend_rate is not None:
        gap = inputs.weekday_rate - inputs.weekend_rate
        if gap >= WEEKEND_REGRESSION_POINTS:
            found["weekend_regression"] = round(gap)

    return Signals(**found)


def compute_coaching_signals(
    session: Session,
    family_id: int,
    *,
    child_id: Optional[int] = None,
    lookback_days: int = 14,
    tz: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Tuple[Signals, SignalInputs]:
    now = now or utcnow()
    start, end = window_bounds(now, lookback_days)
    samples = load_task_samples(session, family_id, start, end, child_id=child_id, tz=tz)
    today = to_local(now, family_zone(tz)).date()
    inputs = compute_signal_inputs(samples, today)
    return detect_signals(inputs), inputs


ALL_NORMAL = CoachingInsight(
    observation="No significant patterns detected in the last 14 days.",
    diagnosis="Behavior patterns are within normal range.",
    recommendation="Continue current approach and monitor trends.",
    expected_result="Maintain current performance levels.",
    next_check="Weekly completion rate",
    impact_score=0,
)


def _signal_insight(name: str, magnitude: int) -> CoachingInsight:
    if name == "evening_slump":
        fields = dict(
            observation=(
                f"Completion rate drops {magnitude} points after 7pm compared with earlier "
                "in the day."
            ),
            diagnosis="Evening fatigue or competing activities reduce task completion.",
            recommendation=(
                "Adjust schedule: move critical tasks earlier in the day or reduce evening "
                "task load."
            ),
            expected_result="Improved completion rate and reduced stress.",
            next_check="Evening completion rate vs baseline",
        )
    elif name == "approval_drag":
        fields = dict(
            observation=(
                f"Approval latency is {magnitude} minutes "
                f"(above {APPROVAL_DRAG_MINUTES}min threshold)."
            ),
            diagnosis="Delayed approvals reduce motivation and break momentum.",
            recommendation=(
                "Add auto-approval rules for high-reliability tasks or set approval reminders."
            ),
            expected_result="Faster reward delivery and improved motivation.",
            next_check="Approval latency (median minutes)",
        )
    elif name == "overload":
        fields = dict(
            observation=f"Daily task load is {magnitude}% higher than the historical median.",
            diagnosis="Too many tasks assigned may cause overwhelm and reduced completion.",
            recommendation="Reduce daily load or split tasks into smaller steps.",
            expected_result="Higher completion rate and reduced stress.",
            next_check="Daily completion rate",
        )
    elif name == "weekend_regression":
        fields = dict(
            observation=f"Weekend completion rate is {magnitude} points lower than weekdays.",
            diagnosis="Weekend routines differ from weekday routines, affecting consistency.",
            recommendation="Adjust weekend expectations or create weekend-specific routines.",
            expected_result="Improved weekend consistency.",
            next_check="Weekend vs weekday completion rate",
        )
    else:
        raise KeyError(name)
    return CoachingInsight(impact_score=SIGNAL_IMPACT[name], signal=name, **fields)


class Recommender(Protocol):
    def recommend(
        self, signals: Signals, metrics: Optional[OutcomeMetrics] = None
    ) -> CoachingInsight: ...


class DeterministicRecommender:
    def recommend(
        self, signals: Signals, metrics: Optional[OutcomeMetrics] = None
    ) -> CoachingInsight:
        fired = signals.fired()
        if not fired:
            return ALL_NORMAL.model_copy()
        insights = [_signal_insight(name, magnitude) for name, magnitude in fired]
        # sorted() is stable: on equal impact the earlier signal wins.
        return sorted(insights, key=lambda insight: insight.impact_score, reverse=True)[0]


class CompletionError(RuntimeError):
    pass


class TextCompleter(Protocol):
    def complete(self, prompt: str, system: str) -> str: ...


class OpenAICompleter:
    def __init__(self, api_key: str, model: str = "gpt-4o-mini", client: Optional[OpenAI] = None):
        self.model = model
        self.client = client or OpenAI(api_key=api_key)

    def complete(self, prompt: str, system: str) -> str:
        response = self.client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": system},
                {"role": "user", "content": prompt},
            ],
            temperature=0.7,
            max_tokens=1000,
        )
        try:
            content = response.choices[0].message.content or ""
        except (AttributeError, IndexError, KeyError) as exc:
            raise CompletionError("Unexpected completion response format") from exc
        if not content.strip():
            raise CompletionError("Empty completion")
        return content


def build_coaching_prompt(signals: Signals, metrics: Optional[OutcomeMetrics] = None) -> str:
    prompt = "Analyze the following behavior data and provide coaching recommendations.\n\n"
    prompt += "SIGNALS DETECTED:\n"
    prompt += json.dumps(signals.as_dict(), indent=2) + "\n\n"
    if metrics is not None:
        prompt += "METRICS:\n"
        prompt += json.dumps(metrics.as_dict(), indent=2) + "\n\n"
    prompt += (
        "Provide recommendations using this EXACT format:\n\n"
        "OBSERVATION: [Data-backed observation]\n"
        "DIAGNOSIS: [Why this is happening]\n"
        "RECOMMENDATION: [One actionable step from allowed set: "
        + ", ".join(ALLOWED_ACTIONS)
        + "]\n"
        "EXPECTED RESULT: [What should improve]\n"
        "NEXT CHECK: [Metric to watch]\n\n"
        "If multiple signals exist, prioritize the one with highest impact."
    )
    return prompt


_HEADER = re.compile(
    r"^\s*[*#\-\s]*(OBSERVATION|DIAGNOSIS|RECOMMENDATION|EXPECTED RESULT|NEXT CHECK)[*\s]*:",
    re.IGNORECASE | re.MULTILINE,
)


def extract_sections(text: str) -> Dict[str, str]:
    """Split a five-field response on its section headers."""
    found: Dict[str, str] = {}
    matches = list(_HEADER.finditer(text))
    for index, match in enumerate(matches):
        end = matches[index + 1].start() if index + 1 < len(matches) else len(text)
        body = text[match.end():end].strip().strip("*").strip()
        header = match.group(1).upper()
        if body and header not in found:
            found[header] = body
    return found


def parse_insight(text: str, signals: Signals) -> CoachingInsight:
    sections = extract_sections(text)
    missing = [header for _, header in SECTIONS if header not in sections]
    if missing:
        raise CompletionError(f"Missing sections: {', '.join(missing)}")
    fired = signals.fired()
    top = max(fired, key=lambda item: SIGNAL_IMPACT[item[0]])[0] if fired else None
    return CoachingInsight(
        impact_score=signals.combined_impact,
        signal=top,
        source="generated",
        **{field: sections[header] for field, header in SECTIONS},
    )


class GeneratedRecommender:
    def __init__(self, completer: TextCompleter, fallback: Optional[Recommender] = None):
        self.completer = completer
        self.fallback = fallback or DeterministicRecommender()

    def recommend(
        self, signals: Signals, metrics: Optional[OutcomeMetrics] = None
    ) -> CoachingInsight:
        prompt = build_coaching_prompt(signals, metrics)
        try:
            text = self.completer.complete(prompt, SYSTEM_PROMPT)
            return parse_insight(text, signals)
        except CompletionError as exc:
            logger.warning("Generated coaching failed, using deterministic insight: %s", exc)
            return self.fallback.recommend(signals, metrics)
        except Exception:
            logger.exception("Completion backend failed, using deterministic insight")
            return self.fallback.recommend(signals, metrics)


def build_recommender(settings: Settings) -> Recommender:
    if settings.text_generation_enabled:
        return GeneratedRecommender(
            OpenAICompleter(settings.openai_api_key, settings.openai_model)
        )
    return DeterministicRecommender()


def coaching_payload(
    signals: Signals,
    inputs: SignalInputs,
    insight: CoachingInsight,
    metrics: Optional[OutcomeMetrics] = None,
) -> Dict[str, Any]:
    return {
        "signals": signals.as_dict(),
        "inputs": inputs.as_dict(),
        "insights": insight.model_dump(),
        "metrics": metrics.as_dict() if metrics else None,
    }
