from __future__ import annotations

from autopilot_web.auto_enable import auto_enable_policy, reconcile_tagged_conversations
from autopilot_web.models import AutopilotPolicyUpsertRequest, ConversationSummaryItem
from autopilot_web.policies import InMemoryPolicyRepository
from autopilot_web.tracking import InMemoryTrackingRepository


class _BrokenPolicyRepository(InMemoryPolicyRepository):
    def upsert_policy(self, payload: AutopilotPolicyUpsertRequest):
        if payload.conversation_id == "conv-broken":
            raise RuntimeError("database unavailable")
        return super().upsert_policy(payload)


def _conversation(conversation_id: str, *tags: str, **overrides: object) -> ConversationSummaryItem:
    values: dict[str, object] = {"conversation_id": conversation_id, "tags": list(tags)}
    values.update(overrides)
    return ConversationSummaryItem(**values)


def test_auto_enable_defaults() -> None:
    payload = auto_enable_policy(
        _conversation("conv-1", "vox-ai", conversation_type="TYPE_WHATSAPP"),
        location_id="loc-1",
        user_id="user-1",
    )

    assert payload.is_enabled is True
    assert payload.reply_delay_minutes == 2
    assert payload.max_replies_per_conversation == 10
    assert payload.max_replies_per_day == 50
    assert payload.cancel_on_user_reply is False
    assert payload.message_type == "WhatsApp"
    assert payload.operating_hours is not None
    assert payload.operating_hours.enabled is False
    assert payload.operating_hours.days_of_week == [1, 2, 3, 4, 5, 6, 7]


def test_unknown_conversation_type_falls_back_to_sms() -> None:
    payload = auto_enable_policy(_conversation("conv-1", conversation_type="fax"), location_id="l", user_id="u")
    assert payload.message_type == "SMS"


def test_reconcile_enables_only_tagged_conversations() -> None:
    policies = InMemoryPolicyRepository()
    tracking = InMemoryTrackingRepository()

    result = reconcile_tagged_conversations(
        [
            _conversation("conv-1", "VOX-AI", "lead", contact_name="Dana", email="dana@example.com"),
            _conversation("conv-2", "lead"),
        ],
        policies=policies,
        tracking=tracking,
        location_id="loc-1",
        user_id="user-1",
    )

    assert result.tag == "vox-ai"
    assert result.enabled == ["conv-1"]
    assert result.ignored == ["conv-2"]
    assert policies.get_policy("conv-2") is None
    record = tracking.get_tracking("conv-1")
    assert record is not None
    assert record.contact_name == "Dana"
    assert record.contact_email == "dana@example.com"


def test_reconcile_is_idempotent_and_reenables_disabled_policies() -> None:
    policies = InMemoryPolicyRepository()
    tracking = InMemoryTrackingRepository()
    conversations = [_conversation("conv-1", "vox-ai"), _conversation("conv-2", "vox-ai")]
    reconcile_tagged_conversations(conversations, policies=policies, tracking=tracking, location_id="l", user_id="u")
    policies.set_enabled("conv-2", is_enabled=False)

    second = reconcile_tagged_conversations(
        conversations,
        policies=policies,
        tracking=tracking,
        location_id="l",
        user_id="u",
    )

    assert second.already_enabled == ["conv-1"]
    assert second.enabled == ["conv-2"]
    policy = policies.get_policy("conv-2")
    assert policy is not None
    assert policy.is_enabled is True


def test_reconcile_records_failures_and_continues() -> None:
    policies = _BrokenPolicyRepository()
    result = reconcile_tagged_conversations(
        [_conversation("conv-broken", "vip"), _conversation("conv-ok", "vip")],
        policies=policies,
        tracking=InMemoryTrackingRepository(),
        location_id="l",
        user_id="u",
        tag=" VIP ",
    )

    assert result.tag == "vip"
    assert result.failed == ["conv-broken"]
    assert result.enabled == ["conv-ok"]
