from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from zoneinfo import ZoneInfo

from .models import VerdictKind
from .policies import AutopilotPolicyRecord, OperatingHoursWindow
from .provider import ProviderMessage
from .tracking import ConversationTrackingRecord, rolled_over


@dataclass(frozen=True)
class Verdict:
    kind: VerdictKind
    reason: str

    @property
    def eligible(self) -> bool:
        return self.kind == "eligible"


ELIGIBLE = Verdict(kind="eligible", reason="eligible")


def _skip(reason: str) -> Verdict:
    return Verdict(kind="skip", reason=reason)


def _clock_minutes(value: str) -> int:
    hours, minutes = value.split(":", 1)
    return int(hours) * 60 + int(minutes)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def is_within_operating_hours(window: OperatingHoursWindow, now: datetime) -> bool:
    """Check `now` against the window in its own timezone.

    A window whose end is not after its start runs overnight; the weekday is
    taken from the local date at `now`.
    """
    local_now = _as_utc(now).astimezone(ZoneInfo(window.timezone))
    if local_now.isoweekday() not in window.days_of_week:
        return False
    current = local_now.hour * 60 + local_now.minute
    start = _clock_minutes(window.start)
    end = _clock_minutes(window.end)
    if start < end:
        return start <= current < end
    return current >= start or current < end


def policy_today(policy: AutopilotPolicyRecord, now: datetime) -> date:
    window = policy.operating_hours
    if window is not None and window.enabled:
        return _as_utc(now).astimezone(ZoneInfo(window.timezone)).date()
    return _as_utc(now).date()


def _matches_any(body: str, keywords: tuple[str, ...]) -> bool:
    normalized = body.casefold()
    return any(keyword.casefold() in normalized for keyword in keywords)


def evaluate(
    policy: AutopilotPolicyRecord,
    tracking: ConversationTrackingRecord,
    message: ProviderMessage | None,
    now: datetime,
    *,
    continuation: bool = False,
) -> Verdict:
    if not policy.is_enabled:
        return _skip("disabled")

    if message is None:
        return _skip("no-new-message")
    if not continuation and message.message_id == tracking.last_seen_message_id:
        return _skip("no-new-message")

    window = policy.operating_hours
    if window is not None and window.enabled and not is_within_operating_hours(window, now):
        return _skip("outside-hours")

    if policy.exclude_keywords and _matches_any(message.body, policy.exclude_keywords):
        return _skip("excluded-keyword")
    if policy.require_human_keywords and not _matches_any(message.body, policy.require_human_keywords):
        return _skip("missing-required-keyword")

    replies_today = tracking.replies_today
    if rolled_over(tracking.last_reply_date, policy_today(policy, now)):
        replies_today = 0
    if replies_today >= policy.max_replies_per_day or tracking.replies_total >= policy.max_replies_per_conversation:
        return _skip("quota-exceeded")

    if _as_utc(now) - _as_utc(message.created_at) < timedelta(minutes=policy.reply_delay_minutes):
        return _skip("delay-not-elapsed")

    if policy.cancel_on_user_reply and tracking.last_human_message_at is not None:
        human_at = _as_utc(tracking.last_human_message_at)
        ai_at = _as_utc(tracking.last_ai_message_at) if tracking.last_ai_message_at is not None else None
        if human_at > _as_utc(message.created_at) and (ai_at is None or human_at > ai_at):
            return Verdict(kind="cancel", reason="user-replied")

    return ELIGIBLE
