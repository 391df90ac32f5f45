from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from .eligibility import Verdict, evaluate, policy_today
from .generator import ConversationContext, GenerationError, ReplyGenerator
from .ledger import AlreadyExists, ProcessedMessageLedger
from .models import MessageType, OutcomeStatus, PipelineStage
from .policies import AutopilotPolicyRecord, PolicyRepository
from .provider import MessagingProvider, ProviderError, ProviderMessage, mask_contact_target
from .tracking import ConversationTrackingRecord, TrackingRepository, new_tracking_record

logger = logging.getLogger(__name__)

RECENT_CONTEXT_MESSAGES = 20


@dataclass(frozen=True)
class PipelineOutcome:
    conversation_id: str
    status: OutcomeStatus
    reason: str | None = None
    stage: PipelineStage | None = None
    message_id: str | None = None
    reply_message_id: str | None = None
    error_message: str | None = None


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _unseen_messages(
    messages: list[ProviderMessage],
    tracking: ConversationTrackingRecord,
) -> list[ProviderMessage]:
    watermark_at = tracking.last_seen_message_at
    fresh = [
        message
        for message in messages
        if message.message_id != tracking.last_seen_message_id
        and (watermark_at is None or _coerce_utc(message.created_at) >= _coerce_utc(watermark_at))
    ]
    fresh.sort(key=lambda value: _coerce_utc(value.created_at))
    return fresh


def _newest_inbound(messages: list[ProviderMessage]) -> ProviderMessage | None:
    for message in reversed(messages):
        if message.direction == "inbound":
            return message
    return None


def _masked_contact(tracking: ConversationTrackingRecord) -> str:
    if tracking.contact_phone:
        return mask_contact_target(tracking.contact_phone, kind="phone") or "***"
    if tracking.contact_email:
        return mask_contact_target(tracking.contact_email, kind="email") or "***"
    return "unknown contact"


def reply_message_type(policy: AutopilotPolicyRecord, message: ProviderMessage) -> MessageType:
    if policy.prefer_conversation_type and message.message_type is not None:
        return message.message_type
    return policy.message_type


class ReplyPipeline:
    """Runs one fetch, evaluate, claim, generate, send pass for a conversation."""

    def __init__(
        self,
        *,
        policies: PolicyRepository,
        tracking: TrackingRepository,
        ledger: ProcessedMessageLedger,
        provider: MessagingProvider,
        generator: ReplyGenerator,
    ) -> None:
        self._policies = policies
        self._tracking = tracking
        self._ledger = ledger
        self._provider = provider
        self._generator = generator

    def run(self, conversation_id: str, *, now: datetime | None = None, dry_run: bool = False) -> PipelineOutcome:
        now = _coerce_utc(now) if now is not None else _now_utc()

        policy = self._policies.get_policy(conversation_id)
        if policy is None or not policy.is_enabled:
            return PipelineOutcome(conversation_id=conversation_id, status="skipped", reason="no-policy")

        if dry_run:
            tracking = self._tracking.get_tracking(conversation_id) or new_tracking_record(
                conversation_id,
                location_id=policy.location_id,
                user_id=policy.user_id,
            )
        else:
            tracking = self._tracking.get_or_create_tracking(
                conversation_id,
                location_id=policy.location_id,
                user_id=policy.user_id,
            )
        if tracking.paused_until is not None and _coerce_utc(tracking.paused_until) > now:
            return PipelineOutcome(conversation_id=conversation_id, status="skipped", reason="paused")

        try:
            fetched = self._provider.fetch_new_messages(conversation_id, tracking.last_seen_message_id)
        except ProviderError as exc:
            logger.warning("autopilot fetch failed for %s: %s (%s)", conversation_id, exc.message, exc.error_code)
            return self._failed(conversation_id, "fetch", exc.message)

        messages = _unseen_messages(fetched, tracking)
        newest = messages[-1] if messages else None
        inbound = _newest_inbound(messages)

        verdict = evaluate(policy, tracking, inbound, now)
        if not verdict.eligible:
            if not dry_run and verdict.reason != "delay-not-elapsed" and newest is not None:
                self._advance(conversation_id, newest, inbound)
            return self._skipped(conversation_id, verdict, inbound)

        if inbound is None:
            return PipelineOutcome(conversation_id=conversation_id, status="skipped", reason="no-new-message")
        if dry_run:
            return PipelineOutcome(
                conversation_id=conversation_id,
                status="dry_run",
                reason="eligible",
                message_id=inbound.message_id,
            )

        claim = self._ledger.claim(inbound.message_id, conversation_id)
        if isinstance(claim, AlreadyExists):
            return PipelineOutcome(
                conversation_id=conversation_id,
                status="skipped",
                reason="already-claimed",
                message_id=inbound.message_id,
            )
        self._advance(conversation_id, newest or inbound, inbound)

        context = ConversationContext(
            conversation_id=conversation_id,
            location_id=policy.location_id,
            user_id=policy.user_id,
            last_customer_message=inbound.body,
            recent_messages=tuple(messages[-RECENT_CONTEXT_MESSAGES:]),
            contact_name=tracking.contact_name,
        )
        try:
            reply_text = self._generator.generate(
                context,
                agent_id=policy.agent_id,
                model=policy.model,
                temperature=policy.temperature,
                max_tokens=policy.max_tokens,
                custom_prompt=policy.custom_prompt,
            )
        except GenerationError as exc:
            logger.warning("autopilot generation failed for %s: %s (%s)", conversation_id, exc.message, exc.error_code)
            return self._failed(conversation_id, "generate", exc.message, message_id=inbound.message_id)
        if not reply_text or not reply_text.strip():
            logger.warning("autopilot generation returned empty text for %s", conversation_id)
            return self._failed(conversation_id, "generate", "empty reply text", message_id=inbound.message_id)

        # Re-check, send and count run under one exclusive hold per conversation.
        with self._tracking.reply_slot(conversation_id) as slot:
            recheck = evaluate(policy, slot.tracking, inbound, now, continuation=True)
            if not recheck.eligible:
                return self._skipped(conversation_id, recheck, inbound)

            try:
                reply_message_id = self._provider.send_message(
                    conversation_id,
                    reply_text.strip(),
                    reply_message_type(policy, inbound),
                )
            except ProviderError as exc:
                logger.warning("autopilot send failed for %s: %s (%s)", conversation_id, exc.message, exc.error_code)
                return self._failed(conversation_id, "send", exc.message, message_id=inbound.message_id)

            updated = slot.record_sent(
                reply_message_id=reply_message_id,
                sent_at=now,
                today=policy_today(policy, now),
            )
        logger.info(
            "autopilot reply sent for %s to %s (today=%s total=%s)",
            conversation_id,
            _masked_contact(updated),
            updated.replies_today,
            updated.replies_total,
        )
        return PipelineOutcome(
            conversation_id=conversation_id,
            status="sent",
            message_id=inbound.message_id,
            reply_message_id=reply_message_id,
        )

    def _advance(
        self,
        conversation_id: str,
        newest: ProviderMessage,
        inbound: ProviderMessage | None,
    ) -> None:
        self._tracking.advance_watermark(
            conversation_id,
            message_id=newest.message_id,
            message_at=_coerce_utc(newest.created_at),
            last_human_message_at=_coerce_utc(inbound.created_at) if inbound is not None else None,
        )

    @staticmethod
    def _skipped(conversation_id: str, verdict: Verdict, inbound: ProviderMessage | None) -> PipelineOutcome:
        return PipelineOutcome(
            conversation_id=conversation_id,
            status="skipped",
            reason=verdict.reason,
            message_id=inbound.message_id if inbound is not None else None,
        )

    @staticmethod
    def _failed(
        conversation_id: str,
        stage: PipelineStage,
        error_message: str,
        *,
        message_id: str | None = None,
    ) -> PipelineOutcome:
        return PipelineOutcome(
            conversation_id=conversation_id,
            status="failed",
            stage=stage,
            message_id=message_id,
            error_message=error_message,
        )
