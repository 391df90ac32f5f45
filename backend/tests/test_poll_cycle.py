from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone

from autopilot_web.cycle import CycleReport, PollCycleDriver
from autopilot_web.generator import StubReplyGenerator
from autopilot_web.ledger import InMemoryProcessedMessageLedger
from autopilot_web.models import AutopilotPolicyUpsertRequest
from autopilot_web.pipeline import ReplyPipeline
from autopilot_web.policies import InMemoryPolicyRepository
from autopilot_web.provider import StubMessagingProvider
from autopilot_web.tracking import InMemoryTrackingRepository

NOW = datetime(2026, 3, 4, 12, 0, tzinfo=timezone.utc)


class _ExplodingProvider(StubMessagingProvider):
    def fetch_new_messages(self, conversation_id: str, after_message_id: str | None):
        if conversation_id == "conv-boom":
            raise RuntimeError("unexpected payload shape")
        return super().fetch_new_messages(conversation_id, after_message_id)


class _BarrierProvider(StubMessagingProvider):
    """Holds every fetch until two callers have fetched the same state."""

    def __init__(self) -> None:
        super().__init__()
        self.barrier = threading.Barrier(2, timeout=5)

    def fetch_new_messages(self, conversation_id: str, after_message_id: str | None):
        messages = super().fetch_new_messages(conversation_id, after_message_id)
        self.barrier.wait()
        return messages


class _SlowFirstSendProvider(StubMessagingProvider):
    """Blocks the first delivery until the test releases it."""

    def __init__(self) -> None:
        super().__init__()
        self.first_send_started = threading.Event()
        self.release_first_send = threading.Event()
        self._send_calls = 0
        self._send_lock = threading.Lock()

    def send_message(self, conversation_id: str, body: str, message_type):
        with self._send_lock:
            self._send_calls += 1
            is_first = self._send_calls == 1
        if is_first:
            self.first_send_started.set()
            self.release_first_send.wait(timeout=5)
        return super().send_message(conversation_id, body, message_type)


class _SignallingGenerator(StubReplyGenerator):
    def __init__(self, *, signal_on_body: str) -> None:
        super().__init__(reply_text="Thanks for reaching out!")
        self._signal_on_body = signal_on_body
        self.generated = threading.Event()

    def generate(self, context, **kwargs):
        reply = super().generate(context, **kwargs)
        if context.last_customer_message == self._signal_on_body:
            self.generated.set()
        return reply


def _policy(conversation_id: str, **overrides: object) -> AutopilotPolicyUpsertRequest:
    values: dict[str, object] = {
        "conversation_id": conversation_id,
        "location_id": "loc-1",
        "user_id": "user-1",
        "is_enabled": True,
        "reply_delay_minutes": 0,
    }
    values.update(overrides)
    return AutopilotPolicyUpsertRequest(**values)


def _driver(
    provider: StubMessagingProvider,
    *,
    policies: InMemoryPolicyRepository | None = None,
    tracking: InMemoryTrackingRepository | None = None,
    ledger: InMemoryProcessedMessageLedger | None = None,
    max_workers: int = 4,
    enabled: bool = True,
) -> tuple[PollCycleDriver, InMemoryPolicyRepository, InMemoryTrackingRepository]:
    policies = policies or InMemoryPolicyRepository()
    tracking = tracking or InMemoryTrackingRepository()
    pipeline = ReplyPipeline(
        policies=policies,
        tracking=tracking,
        ledger=ledger or InMemoryProcessedMessageLedger(),
        provider=provider,
        generator=StubReplyGenerator(reply_text="Thanks for reaching out!"),
    )
    driver = PollCycleDriver(policies=policies, pipeline=pipeline, max_workers=max_workers, enabled=enabled)
    return driver, policies, tracking


def test_cycle_isolates_unexpected_pipeline_errors() -> None:
    provider = _ExplodingProvider()
    driver, policies, _ = _driver(provider)
    for conversation_id in ("conv-a", "conv-boom", "conv-b"):
        policies.upsert_policy(_policy(conversation_id))
        provider.add_message(conversation_id, message_id=f"{conversation_id}-m1", body="hi", created_at=NOW)

    report = driver.run_cycle(now=NOW)

    assert report.processed == 3
    assert report.sent == 2
    assert report.failed == 1
    crashed = [item for item in report.results if item.conversation_id == "conv-boom"]
    assert crashed[0].status == "failed"
    assert crashed[0].stage == "internal"
    assert any("conv-boom" in error for error in report.errors)


def test_disabled_policies_never_send() -> None:
    provider = StubMessagingProvider()
    driver, policies, _ = _driver(provider)
    for index in range(3):
        conversation_id = f"conv-{index}"
        policies.upsert_policy(_policy(conversation_id, is_enabled=False))
        provider.add_message(conversation_id, message_id=f"m-{index}", body="hello", created_at=NOW)

    for step in range(3):
        report = driver.run_cycle(now=NOW + timedelta(minutes=step))
        assert report.processed == 0

    assert provider.sent == []


def test_quotas_hold_across_sequential_cycles_and_roll_over() -> None:
    provider = StubMessagingProvider()
    driver, policies, tracking = _driver(provider)
    policies.upsert_policy(_policy("conv-1", max_replies_per_day=2, max_replies_per_conversation=3))

    for hour in range(6):
        cycle_at = NOW + timedelta(hours=hour)
        provider.add_message("conv-1", message_id=f"day1-{hour}", body="still there?", created_at=cycle_at - timedelta(minutes=1))
        driver.run_cycle(now=cycle_at)
        current = tracking.get_tracking("conv-1")
        assert current is not None
        assert current.replies_today <= 2
        assert current.replies_total <= 3

    after_day_one = tracking.get_tracking("conv-1")
    assert after_day_one is not None
    assert (after_day_one.replies_today, after_day_one.replies_total) == (2, 2)

    next_day = NOW + timedelta(days=1)
    for hour in range(3):
        cycle_at = next_day + timedelta(hours=hour)
        provider.add_message("conv-1", message_id=f"day2-{hour}", body="hello again", created_at=cycle_at - timedelta(minutes=1))
        driver.run_cycle(now=cycle_at)

    final = tracking.get_tracking("conv-1")
    assert final is not None
    assert (final.replies_today, final.replies_total) == (1, 3)
    assert final.last_reply_date == next_day.date()
    assert len(provider.sent) == 3


def test_overlapping_cycles_send_exactly_once() -> None:
    provider = _BarrierProvider()
    policies = InMemoryPolicyRepository()
    tracking = InMemoryTrackingRepository()
    ledger = InMemoryProcessedMessageLedger()
    first, _, _ = _driver(provider, policies=policies, tracking=tracking, ledger=ledger)
    second, _, _ = _driver(provider, policies=policies, tracking=tracking, ledger=ledger)
    policies.upsert_policy(_policy("conv-1"))
    provider.add_message("conv-1", message_id="msg-1", body="anyone there?", created_at=NOW - timedelta(minutes=1))

    reports: list[CycleReport] = []
    lock = threading.Lock()

    def _run(driver: PollCycleDriver) -> None:
        report = driver.run_cycle(now=NOW)
        with lock:
            reports.append(report)

    threads = [threading.Thread(target=_run, args=(driver,)) for driver in (first, second)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)

    outcomes = sorted((item.status, item.reason) for report in reports for item in report.results)
    assert outcomes == [("sent", None), ("skipped", "already-claimed")]
    assert len(provider.sent) == 1
    current = tracking.get_tracking("conv-1")
    assert current is not None
    assert current.replies_total == 1


def test_overlapping_runs_on_different_messages_respect_quota() -> None:
    provider = _SlowFirstSendProvider()
    generator = _SignallingGenerator(signal_on_body="second question")
    policies = InMemoryPolicyRepository()
    tracking = InMemoryTrackingRepository()
    pipeline = ReplyPipeline(
        policies=policies,
        tracking=tracking,
        ledger=InMemoryProcessedMessageLedger(),
        provider=provider,
        generator=generator,
    )
    policies.upsert_policy(_policy("conv-1", max_replies_per_day=1, max_replies_per_conversation=1))
    provider.add_message("conv-1", message_id="m1", body="first question", created_at=NOW - timedelta(minutes=2))

    outcomes: dict[str, str | None] = {}

    def _run(name: str) -> None:
        outcome = pipeline.run("conv-1", now=NOW)
        outcomes[name] = outcome.reason if outcome.status == "skipped" else outcome.status

    first = threading.Thread(target=_run, args=("first",))
    first.start()
    assert provider.first_send_started.wait(timeout=5)

    provider.add_message("conv-1", message_id="m2", body="second question", created_at=NOW - timedelta(minutes=1))
    second = threading.Thread(target=_run, args=("second",))
    second.start()
    assert generator.generated.wait(timeout=5)

    provider.release_first_send.set()
    first.join(timeout=10)
    second.join(timeout=10)

    assert outcomes == {"first": "sent", "second": "quota-exceeded"}
    assert len(provider.sent) == 1
    current = tracking.get_tracking("conv-1")
    assert current is not None
    assert (current.replies_today, current.replies_total) == (1, 1)


def test_cycle_respects_worker_bound_and_counts_eligible() -> None:
    provider = StubMessagingProvider()
    driver, policies, _ = _driver(provider, max_workers=2)
    for index in range(5):
        conversation_id = f"conv-{index}"
        policies.upsert_policy(_policy(conversation_id))
        provider.add_message(conversation_id, message_id=f"m-{index}", body="hi", created_at=NOW)
    policies.upsert_policy(_policy("conv-quiet"))

    report = driver.run_cycle(now=NOW)

    assert report.processed == 6
    assert report.sent == 5
    assert report.eligible == 5
    assert report.skipped == 1
    assert report.run_at == NOW


def test_dry_run_cycle_reports_without_sending() -> None:
    provider = StubMessagingProvider()
    driver, policies, tracking = _driver(provider)
    policies.upsert_policy(_policy("conv-1"))
    provider.add_message("conv-1", message_id="m-1", body="hi", created_at=NOW)

    report = driver.run_cycle(dry_run=True, now=NOW)

    assert report.dry_run is True
    assert report.eligible == 1
    assert report.sent == 0
    assert provider.sent == []
    assert tracking.get_tracking("conv-1") is None


def test_switched_off_engine_does_nothing() -> None:
    provider = StubMessagingProvider()
    driver, policies, _ = _driver(provider, enabled=False)
    policies.upsert_policy(_policy("conv-1"))
    provider.add_message("conv-1", message_id="m-1", body="hi", created_at=NOW)

    report = driver.run_cycle(now=NOW)

    assert report.processed == 0
    assert report.errors == ("autopilot is disabled",)
    assert provider.sent == []
