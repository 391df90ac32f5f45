from __future__ import annotations

import hmac

from fastapi import APIRouter, HTTPException, Query, Request

from .auto_enable import reconcile_tagged_conversations
from .config import Settings, get_settings, runtime_secret_issues
from .credentials import (
    CredentialStore,
    OAuthTokenRefresher,
    create_credential_store,
    seed_credentials_from_settings,
)
from .cycle import CycleReport, PollCycleDriver
from .generator import HttpReplyGenerator, ReplyGenerator, StubReplyGenerator
from .ledger import ProcessedMessageLedger, create_processed_message_ledger
from .models import (
    AutoEnableRequest,
    AutoEnableResponse,
    AutopilotPolicyItem,
    AutopilotPolicyResponse,
    AutopilotPolicyUpsertRequest,
    ConversationOutcomeItem,
    ConversationPauseRequest,
    ConversationTrackingItem,
    ConversationTrackingListResponse,
    CycleReportResponse,
    CycleRunRequest,
    OperatingHours,
    RuntimeStatusResponse,
)
from .pipeline import ReplyPipeline
from .policies import AutopilotPolicyRecord, PolicyNotFoundError, PolicyRepository, create_policy_repository
from .provider import (
    HttpLeadConnectorClient,
    MessagingProvider,
    StubMessagingProvider,
    mask_contact_target,
    with_auto_refresh,
)
from .tracking import ConversationTrackingRecord, TrackingRepository, create_tracking_repository

_settings = get_settings()
router = APIRouter(prefix=f"{_settings.api_prefix}/autopilot", tags=["autopilot"])


def _create_provider(settings: Settings, store: CredentialStore) -> MessagingProvider:
    if settings.provider_client_type == "http":
        seed_credentials_from_settings(store, settings)
        client = HttpLeadConnectorClient(
            base_url=settings.provider_api_base_url,
            token_source=store,
            api_version=settings.provider_api_version,
            fetch_limit=settings.autopilot_fetch_limit,
            timeout_seconds=settings.provider_timeout_seconds,
        )
        refresher = OAuthTokenRefresher(
            token_url=settings.provider_token_url,
            client_id=settings.provider_client_id,
            client_secret=settings.provider_client_secret,
            store=store,
            timeout_seconds=settings.provider_timeout_seconds,
        )
        return with_auto_refresh(
            client,
            refresher=refresher,
            max_retries=settings.provider_max_retries,
            backoff_seconds=settings.provider_retry_backoff_seconds,
        )
    return StubMessagingProvider()


def _create_generator(settings: Settings) -> ReplyGenerator:
    if settings.generator_type == "http":
        return HttpReplyGenerator(
            base_url=settings.generator_api_base_url,
            api_key=settings.generator_api_key,
            timeout_seconds=settings.generator_timeout_seconds,
        )
    return StubReplyGenerator()


policy_repo: PolicyRepository = create_policy_repository(
    backend=_settings.autopilot_store_backend,
    database_url=_settings.database_url,
)
tracking_repo: TrackingRepository = create_tracking_repository(
    backend=_settings.autopilot_store_backend,
    database_url=_settings.database_url,
)
processed_ledger: ProcessedMessageLedger = create_processed_message_ledger(
    backend=_settings.autopilot_store_backend,
    database_url=_settings.database_url,
)
credential_store: CredentialStore = create_credential_store(
    backend=_settings.autopilot_store_backend,
    database_url=_settings.database_url,
)
messaging_provider: MessagingProvider = _create_provider(_settings, credential_store)
reply_generator: ReplyGenerator = _create_generator(_settings)


def configure_runtime(settings: Settings) -> None:
    """Rebuild the module-level stores and clients from `settings`."""
    global _settings, policy_repo, tracking_repo, processed_ledger, credential_store
    global messaging_provider, reply_generator
    _settings = settings
    policy_repo = create_policy_repository(backend=settings.autopilot_store_backend, database_url=settings.database_url)
    tracking_repo = create_tracking_repository(
        backend=settings.autopilot_store_backend,
        database_url=settings.database_url,
    )
    processed_ledger = create_processed_message_ledger(
        backend=settings.autopilot_store_backend,
        database_url=settings.database_url,
    )
    credential_store = create_credential_store(
        backend=settings.autopilot_store_backend,
        database_url=settings.database_url,
    )
    messaging_provider = _create_provider(settings, credential_store)
    reply_generator = _create_generator(settings)


def reset_runtime_state_for_tests() -> None:
    policy_repo.reset()
    tracking_repo.reset()
    processed_ledger.reset()
    credential_store.reset()


def build_cycle_driver() -> PollCycleDriver:
    pipeline = ReplyPipeline(
        policies=policy_repo,
        tracking=tracking_repo,
        ledger=processed_ledger,
        provider=messaging_provider,
        generator=reply_generator,
    )
    return PollCycleDriver(
        policies=policy_repo,
        pipeline=pipeline,
        max_workers=_settings.autopilot_max_workers,
        enabled=_settings.autopilot_enabled,
    )


def _require_api_secret(request: Request) -> None:
    expected = _settings.autopilot_api_secret.strip()
    if not expected:
        return
    token = request.headers.get("Authorization", "").removeprefix("Bearer ").strip()
    if not token:
        raise HTTPException(401, "autopilot api secret required")
    if not hmac.compare_digest(token.encode("utf-8"), expected.encode("utf-8")):
        raise HTTPException(401, "invalid autopilot api secret")


def _policy_item(record: AutopilotPolicyRecord) -> AutopilotPolicyItem:
    window = record.operating_hours
    return AutopilotPolicyItem(
        conversation_id=record.conversation_id,
        location_id=record.location_id,
        user_id=record.user_id,
        is_enabled=record.is_enabled,
        reply_delay_minutes=record.reply_delay_minutes,
        max_replies_per_conversation=record.max_replies_per_conversation,
        max_replies_per_day=record.max_replies_per_day,
        operating_hours=(
            OperatingHours(
                enabled=window.enabled,
                start=window.start,
                end=window.end,
                timezone=window.timezone,
                days_of_week=list(window.days_of_week),
            )
            if window is not None
            else None
        ),
        cancel_on_user_reply=record.cancel_on_user_reply,
        require_human_keywords=list(record.require_human_keywords),
        exclude_keywords=list(record.exclude_keywords),
        agent_id=record.agent_id,
        model=record.model,
        temperature=record.temperature,
        max_tokens=record.max_tokens,
        custom_prompt=record.custom_prompt,
        message_type=record.message_type,
        prefer_conversation_type=record.prefer_conversation_type,
        created_at=record.created_at,
        updated_at=record.updated_at,
    )


def _tracking_item(record: ConversationTrackingRecord) -> ConversationTrackingItem:
    return ConversationTrackingItem(
        conversation_id=record.conversation_id,
        location_id=record.location_id,
        user_id=record.user_id,
        last_seen_message_id=record.last_seen_message_id,
        last_seen_message_at=record.last_seen_message_at,
        last_human_message_at=record.last_human_message_at,
        last_ai_message_at=record.last_ai_message_at,
        last_ai_message_id=record.last_ai_message_id,
        replies_total=record.replies_total,
        replies_today=record.replies_today,
        last_reply_date=record.last_reply_date,
        conversation_status=record.conversation_status,
        contact_name=record.contact_name,
        contact_email_masked=mask_contact_target(record.contact_email, kind="email"),
        contact_phone_masked=mask_contact_target(record.contact_phone, kind="phone"),
        paused_until=record.paused_until,
        updated_at=record.updated_at,
    )


def cycle_report_response(report: CycleReport) -> CycleReportResponse:
    return CycleReportResponse(
        run_at=report.run_at,
        finished_at=report.finished_at,
        dry_run=report.dry_run,
        processed=report.processed,
        sent=report.sent,
        skipped=report.skipped,
        failed=report.failed,
        eligible=report.eligible,
        results=[
            ConversationOutcomeItem(
                conversation_id=item.conversation_id,
                status=item.status,
                reason=item.reason,
                stage=item.stage,
                message_id=item.message_id,
                reply_message_id=item.reply_message_id,
                error_message=item.error_message,
            )
            for item in report.results
        ],
        errors=list(report.errors),
    )


def _get_policy_or_raise(conversation_id: str) -> AutopilotPolicyRecord:
    record = policy_repo.get_policy(conversation_id)
    if record is None:
        raise PolicyNotFoundError(conversation_id)
    return record


@router.post("/poll", response_model=CycleReportResponse)
def run_poll_cycle(request: Request, payload: CycleRunRequest | None = None) -> CycleReportResponse:
    _require_api_secret(request)
    dry_run = payload.dry_run if payload is not None else False
    report = build_cycle_driver().run_cycle(dry_run=dry_run)
    return cycle_report_response(report)


@router.api_route("/cron", methods=["GET", "POST"], response_model=CycleReportResponse)
def run_cron_cycle(request: Request, dry_run: bool = Query(default=False)) -> CycleReportResponse:
    _require_api_secret(request)
    report = build_cycle_driver().run_cycle(dry_run=dry_run)
    return cycle_report_response(report)


@router.get("/config", response_model=AutopilotPolicyResponse)
def get_policy_config(request: Request, conversation_id: str = Query(min_length=1)) -> AutopilotPolicyResponse:
    _require_api_secret(request)
    try:
        record = _get_policy_or_raise(conversation_id)
    except PolicyNotFoundError as exc:
        raise HTTPException(status_code=404, detail=f"policy not found: {conversation_id}") from exc
    return AutopilotPolicyResponse(policy=_policy_item(record))


@router.post("/config", response_model=AutopilotPolicyResponse)
def upsert_policy_config(request: Request, payload: AutopilotPolicyUpsertRequest) -> AutopilotPolicyResponse:
    _require_api_secret(request)
    try:
        record = policy_repo.upsert_policy(payload)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    tracking_repo.get_or_create_tracking(
        record.conversation_id,
        location_id=record.location_id,
        user_id=record.user_id,
    )
    return AutopilotPolicyResponse(policy=_policy_item(record))


@router.post("/config/{conversation_id}/disable", response_model=AutopilotPolicyResponse)
def disable_policy_config(request: Request, conversation_id: str) -> AutopilotPolicyResponse:
    _require_api_secret(request)
    try:
        record = policy_repo.set_enabled(conversation_id, is_enabled=False)
    except PolicyNotFoundError as exc:
        raise HTTPException(status_code=404, detail=f"policy not found: {conversation_id}") from exc
    return AutopilotPolicyResponse(policy=_policy_item(record))


@router.post("/config/{conversation_id}/pause", response_model=ConversationTrackingItem)
def pause_conversation(
    request: Request,
    conversation_id: str,
    payload: ConversationPauseRequest,
) -> ConversationTrackingItem:
    """Pause automated replies until `paused_until`; a null value resumes them."""
    _require_api_secret(request)
    try:
        policy = _get_policy_or_raise(conversation_id)
    except PolicyNotFoundError as exc:
        raise HTTPException(status_code=404, detail=f"policy not found: {conversation_id}") from exc
    tracking_repo.get_or_create_tracking(conversation_id, location_id=policy.location_id, user_id=policy.user_id)
    record = tracking_repo.set_paused_until(conversation_id, payload.paused_until)
    return _tracking_item(record)


@router.get("/tracking", response_model=ConversationTrackingListResponse)
def list_conversation_tracking(
    request: Request,
    conversation_id: str | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
) -> ConversationTrackingListResponse:
    _require_api_secret(request)
    if conversation_id:
        record = tracking_repo.get_tracking(conversation_id)
        items = [_tracking_item(record)] if record is not None else []
    else:
        items = [_tracking_item(record) for record in tracking_repo.list_tracking(limit=limit)]
    return ConversationTrackingListResponse(items=items, count=len(items))


@router.post("/auto-enable", response_model=AutoEnableResponse)
def auto_enable_tagged(request: Request, payload: AutoEnableRequest) -> AutoEnableResponse:
    _require_api_secret(request)
    result = reconcile_tagged_conversations(
        payload.conversations,
        policies=policy_repo,
        tracking=tracking_repo,
        location_id=payload.location_id,
        user_id=payload.user_id,
        tag=payload.tag or _settings.autopilot_auto_enable_tag,
    )
    return AutoEnableResponse(
        tag=result.tag,
        enabled=result.enabled,
        already_enabled=result.already_enabled,
        ignored=result.ignored,
        failed=result.failed,
    )


@router.get("/status", response_model=RuntimeStatusResponse)
def runtime_status(request: Request) -> RuntimeStatusResponse:
    _require_api_secret(request)
    return RuntimeStatusResponse(
        autopilot_enabled=_settings.autopilot_enabled,
        store_backend=_settings.autopilot_store_backend,
        provider_client_type=_settings.provider_client_type,
        generator_type=_settings.generator_type,
        max_workers=_settings.autopilot_max_workers,
        runtime_secret_guard_mode=_settings.runtime_secret_guard_mode,  # type: ignore[arg-type]
        runtime_secret_issues=list(runtime_secret_issues(_settings)),
        enabled_policy_count=len(policy_repo.list_enabled_policies()),
    )
