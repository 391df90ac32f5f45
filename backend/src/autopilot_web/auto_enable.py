from __future__ import annotations

import logging
from dataclasses import dataclass, field

from .models import AutopilotPolicyUpsertRequest, ConversationSummaryItem, OperatingHours
from .policies import PolicyRepository
from .provider import normalize_message_type
from .tracking import TrackingRepository

logger = logging.getLogger(__name__)

DEFAULT_AUTO_ENABLE_TAG = "vox-ai"


@dataclass
class AutoEnableResult:
    tag: str
    enabled: list[str] = field(default_factory=list)
    already_enabled: list[str] = field(default_factory=list)
    ignored: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)


def auto_enable_policy(
    conversation: ConversationSummaryItem,
    *,
    location_id: str,
    user_id: str,
) -> AutopilotPolicyUpsertRequest:
    return AutopilotPolicyUpsertRequest(
        conversation_id=conversation.conversation_id,
        location_id=location_id,
        user_id=user_id,
        is_enabled=True,
        reply_delay_minutes=2,
        max_replies_per_conversation=10,
        max_replies_per_day=50,
        operating_hours=OperatingHours(
            enabled=False,
            start="00:00",
            end="23:59",
            timezone="UTC",
            days_of_week=[1, 2, 3, 4, 5, 6, 7],
        ),
        cancel_on_user_reply=False,
        message_type=normalize_message_type(conversation.conversation_type) or "SMS",
        prefer_conversation_type=True,
    )


def reconcile_tagged_conversations(
    conversations: list[ConversationSummaryItem],
    *,
    policies: PolicyRepository,
    tracking: TrackingRepository,
    location_id: str,
    user_id: str,
    tag: str = DEFAULT_AUTO_ENABLE_TAG,
) -> AutoEnableResult:
    """Enable automation for every conversation carrying `tag`.

    Conversations that already have an enabled policy are left untouched, so
    running the job repeatedly is safe.
    """
    normalized_tag = tag.strip().lower() or DEFAULT_AUTO_ENABLE_TAG
    result = AutoEnableResult(tag=normalized_tag)
    for conversation in conversations:
        conversation_id = conversation.conversation_id
        if normalized_tag not in conversation.tags:
            result.ignored.append(conversation_id)
            continue
        try:
            existing = policies.get_policy(conversation_id)
            if existing is not None and existing.is_enabled:
                result.already_enabled.append(conversation_id)
                continue
            policies.upsert_policy(auto_enable_policy(conversation, location_id=location_id, user_id=user_id))
            tracking.upsert_contact(
                conversation_id,
                location_id=location_id,
                user_id=user_id,
                contact_name=conversation.contact_name,
                contact_email=conversation.email,
                contact_phone=conversation.phone,
                conversation_status=conversation.status,
            )
        except Exception:
            logger.exception("auto-enable failed for conversation %s", conversation_id)
            result.failed.append(conversation_id)
            continue
        result.enabled.append(conversation_id)

    if result.enabled:
        logger.info("auto-enabled autopilot for %s conversations tagged %s", len(result.enabled), normalized_tag)
    return result
