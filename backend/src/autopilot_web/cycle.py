from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime, timezone

from .pipeline import PipelineOutcome, ReplyPipeline
from .policies import PolicyRepository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CycleReport:
    run_at: datetime
    finished_at: datetime
    dry_run: bool
    processed: int = 0
    sent: int = 0
    skipped: int = 0
    failed: int = 0
    eligible: int = 0
    results: tuple[PipelineOutcome, ...] = field(default_factory=tuple)
    errors: tuple[str, ...] = field(default_factory=tuple)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _counts_as_eligible(outcome: PipelineOutcome) -> bool:
    if outcome.status in {"sent", "dry_run"}:
        return True
    return outcome.status == "failed" and outcome.stage in {"generate", "send"}


def summarize(
    results: list[PipelineOutcome],
    *,
    run_at: datetime,
    dry_run: bool,
    errors: list[str],
) -> CycleReport:
    return CycleReport(
        run_at=run_at,
        finished_at=_now_utc(),
        dry_run=dry_run,
        processed=len(results),
        sent=sum(1 for item in results if item.status == "sent"),
        skipped=sum(1 for item in results if item.status == "skipped"),
        failed=sum(1 for item in results if item.status == "failed"),
        eligible=sum(1 for item in results if _counts_as_eligible(item)),
        results=tuple(results),
        errors=tuple(errors),
    )


class PollCycleDriver:
    """Runs the reply pipeline across every enabled conversation."""

    def __init__(
        self,
        *,
        policies: PolicyRepository,
        pipeline: ReplyPipeline,
        max_workers: int = 4,
        enabled: bool = True,
    ) -> None:
        self._policies = policies
        self._pipeline = pipeline
        self._max_workers = max(1, max_workers)
        self._enabled = enabled

    def run_cycle(self, *, dry_run: bool = False, now: datetime | None = None) -> CycleReport:
        run_at = now or _now_utc()
        if not self._enabled:
            logger.info("autopilot cycle skipped: AUTOPILOT_ENABLED is off")
            return summarize([], run_at=run_at, dry_run=dry_run, errors=["autopilot is disabled"])

        try:
            policies = self._policies.list_enabled_policies()
        except Exception as exc:
            logger.exception("autopilot cycle could not load enabled policies")
            return summarize([], run_at=run_at, dry_run=dry_run, errors=[f"policy load failed: {exc}"])

        logger.info("autopilot cycle started: %s conversations dry_run=%s", len(policies), dry_run)
        results: list[PipelineOutcome] = []
        errors: list[str] = []
        if policies:
            workers = min(self._max_workers, len(policies))
            with ThreadPoolExecutor(max_workers=workers) as executor:
                futures = {
                    executor.submit(self._pipeline.run, policy.conversation_id, now=now, dry_run=dry_run): policy.conversation_id
                    for policy in policies
                }
                for future in as_completed(futures):
                    conversation_id = futures[future]
                    try:
                        results.append(future.result())
                    except Exception as exc:
                        logger.exception("autopilot pipeline crashed for %s (stage=internal)", conversation_id)
                        errors.append(f"{conversation_id}: {exc}")
                        results.append(
                            PipelineOutcome(
                                conversation_id=conversation_id,
                                status="failed",
                                stage="internal",
                                error_message=str(exc),
                            )
                        )

        report = summarize(results, run_at=run_at, dry_run=dry_run, errors=errors)
        logger.info(
            "autopilot cycle finished: processed=%s sent=%s skipped=%s failed=%s",
            report.processed,
            report.sent,
            report.skipped,
            report.failed,
        )
        return report
