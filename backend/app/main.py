from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse

from backend.app.auth import AuthContext, get_auth_context, issue_session_token, require_roles
from backend.app.models import (
    CallCreateRequest,
    CallRecord,
    CallUpdateRequest,
    CampaignAuditEventRecord,
    CampaignCreateRequest,
    CampaignProgressResponse,
    CampaignRecord,
    CampaignUpdateRequest,
    CandidateCreateRequest,
    CandidateRecord,
    CandidateUpdateRequest,
    ConnectorStatusResponse,
    DashboardStatsResponse,
    DispatchResult,
    DncCheckResponse,
    DncCreateRequest,
    DncEntryRecord,
    EnrollmentStatus,
    HealthResponse,
    LaunchResult,
    LoginRequest,
    LoginResponse,
    MockModeRequest,
    MockModeResponse,
    SessionUser,
    SettingRecord,
    SettingUpdateRequest,
    VacancyCreateRequest,
    VacancyRecord,
    VacancyUpdateRequest,
    WebhookAckResponse,
)
from backend.app.observability import MetricsRegistry, configure_logging, observe_request
from backend.app.persistence import SqlPersistence, StorePersistenceError
from backend.app.services.call_events import PermanentWebhookError, apply_call_event
from backend.app.services.campaign_executor import (
    MOCK_MODE_SETTING,
    CampaignExecutor,
    is_mock_mode,
)
from backend.app.services.eligibility import can_contact
from backend.app.services.lifecycle import (
    CampaignTransitionError,
    record_call_outcome,
    transition_campaign,
)
from backend.app.services.voice_provider import build_voice_provider
from backend.app.services.workflow import can_transition
from backend.app.services.webhooks import (
    SignatureVerificationError,
    WebhookPayloadError,
    extract_event_id,
    extract_event_type,
    parse_webhook_body,
    verify_provider_signature,
    webhook_secret,
)
from backend.app.sessions import (
    DEMO_ACCOUNTS,
    InMemorySessionStore,
    SqlSessionStore,
    authenticate_demo_account,
)
from backend.app.settings import Settings, load_settings
from backend.app.store import InMemoryStore, StoreConflictError, StoreNotFoundError

logger = logging.getLogger("recruit_caller.api")

STAFF_ROLES = ("recruiter", "admin")


def create_app() -> FastAPI:
    app = FastAPI(title="Recruit Caller API", version="0.1.0")
    configure_logging()
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    settings = load_settings()
    persistence = SqlPersistence(settings.database_url) if settings.persistence_enabled else None
    app.state.store = InMemoryStore(persistence=persistence)
    app.state.session_store = (
        SqlSessionStore(persistence) if persistence else InMemorySessionStore()
    )
    app.state.settings = settings
    app.state.metrics = MetricsRegistry()
    app.state.voice_provider = build_voice_provider(settings)

    @app.middleware("http")
    async def observability_middleware(request: Request, call_next):
        return await observe_request(request, call_next, metrics=app.state.metrics)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        messages = []
        for error in exc.errors():
            location = ".".join(
                str(part) for part in error.get("loc", ()) if part not in {"body", "query", "path"}
            )
            message = error.get("msg", "invalid value")
            messages.append(f"{location}: {message}" if location else message)
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"detail": "; ".join(messages) or "invalid request"},
        )

    @app.exception_handler(StorePersistenceError)
    async def persistence_error_handler(request: Request, exc: StorePersistenceError):
        logger.error(
            "store_persistence_error method=%s path=%s error=%s",
            request.method,
            request.url.path,
            exc,
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"detail": "internal server error"},
        )

    app.include_router(build_router())
    return app


def get_store(request: Request) -> InMemoryStore:
    return request.app.state.store


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_metrics(request: Request) -> MetricsRegistry:
    return request.app.state.metrics


def get_executor(request: Request) -> CampaignExecutor:
    return CampaignExecutor(
        store=get_store(request),
        settings=get_settings(request),
        voice_provider=request.app.state.voice_provider,
        metrics=get_metrics(request),
    )


def _login(request: Request, email: str, roles: list[str]) -> LoginResponse:
    settings = get_settings(request)
    session = request.app.state.session_store.create(
        email=email,
        roles=roles,
        ttl_hours=settings.session_ttl_hours,
    )
    logger.info("session_created user_id=%s session_id=%s", session.user_id, session.id)
    return LoginResponse(
        session_id=issue_session_token(settings, session),
        user=SessionUser(id=session.user_id, email=session.email, roles=session.roles),
        expires_at_utc=session.expires_at_utc,
    )


def connector_status(settings: Settings) -> ConnectorStatusResponse:
    """Which third-party integrations have credentials configured."""
    return ConnectorStatusResponse(
        openai=bool(settings.openai_api_key),
        vapi=bool(settings.vapi_api_key),
        twilio=bool(settings.twilio_account_sid),
        ghl=bool(settings.ghl_api_key),
    )


def campaign_progress(store: InMemoryStore, campaign: CampaignRecord) -> CampaignProgressResponse:
    enrollments = store.list_enrollments(campaign.id)
    if enrollments:
        queued = sum(
            1
            for enrollment in enrollments
            if enrollment.status in {EnrollmentStatus.pending, EnrollmentStatus.retry_scheduled}
        )
        in_progress = sum(
            1 for enrollment in enrollments if enrollment.status == EnrollmentStatus.dialing
        )
    else:
        queued = max(campaign.total_candidates - campaign.completed_calls, 0)
        in_progress = 0
    return CampaignProgressResponse(
        campaign_id=campaign.id,
        status=campaign.status,
        queued=queued,
        in_progress=in_progress,
        completed=campaign.completed_calls,
        failed=campaign.failed_calls,
    )


async def _handle_webhook(request: Request, source: str) -> WebhookAckResponse:
    store = get_store(request)
    settings = get_settings(request)
    metrics = get_metrics(request)
    raw_body = await request.body()
    try:
        verify_provider_signature(
            source,
            headers=request.headers,
            raw_body=raw_body,
            secret=webhook_secret(settings, source),
        )
    except SignatureVerificationError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        payload = parse_webhook_body(raw_body, request.headers.get("content-type", ""))
    except WebhookPayloadError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    event_id = extract_event_id(source, payload, raw_body)
    event, should_apply = store.record_webhook_event(
        event_id=event_id,
        source=source,
        event_type=extract_event_type(source, payload),
        payload=payload,
    )
    metrics.record_webhook(source=source, duplicate=not should_apply)
    if not should_apply:
        logger.info("webhook_duplicate source=%s event_id=%s", source, event_id)
        return WebhookAckResponse(duplicate=True, event_id=event_id, detail="already received")

    try:
        detail = apply_call_event(store=store, source=source, payload=payload, metrics=metrics)
    except PermanentWebhookError as exc:
        store.mark_webhook_processed(event_id, error=str(exc))
        logger.warning(
            "webhook_rejected source=%s event_id=%s error=%s", source, event_id, exc
        )
        return WebhookAckResponse(success=False, event_id=event_id, detail=str(exc))
    except Exception:
        # left unprocessed so the provider's retry applies it again
        logger.exception("webhook_apply_failed source=%s event_id=%s", source, event_id)
        raise
    store.mark_webhook_processed(event_id)
    logger.info(
        "webhook_processed source=%s event_id=%s type=%s detail=%s",
        source,
        event_id,
        event.event_type,
        detail,
    )
    return WebhookAckResponse(event_id=event_id, detail=detail)


def build_router() -> APIRouter:
    router = APIRouter()
    api = APIRouter(prefix="/api")

    @router.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @router.get("/health/ready")
    def readiness(request: Request) -> dict[str, str]:
        settings = get_settings(request)
        persistence = getattr(request.app.state.store, "persistence", None)
        if settings.persistence_enabled and persistence and not persistence.ping():
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="database unavailable",
            )
        return {"status": "ready"}

    @router.get("/metrics", response_class=PlainTextResponse)
    def metrics(request: Request) -> Response:
        registry = get_metrics(request)
        return PlainTextResponse(registry.to_prometheus())

    # auth

    @api.post("/auth/login", response_model=LoginResponse)
    def login(payload: LoginRequest, request: Request) -> LoginResponse:
        roles = authenticate_demo_account(payload.email, payload.password)
        if roles is None:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="invalid email or password",
            )
        return _login(request, payload.email.strip().lower(), roles)

    @api.post("/auth/demo", response_model=LoginResponse)
    def demo_login(request: Request) -> LoginResponse:
        email = get_settings(request).demo_login_email.lower()
        account = DEMO_ACCOUNTS.get(email)
        roles = list(account[1]) if account else ["recruiter"]
        return _login(request, email, roles)

    @api.post("/auth/logout")
    def logout(
        request: Request,
        context: AuthContext = Depends(get_auth_context),
    ) -> dict[str, bool]:
        if context.session_id:
            request.app.state.session_store.delete(context.session_id)
            logger.info("session_closed user_id=%s", context.user_id)
        return {"success": True}

    @api.get("/auth/me", response_model=SessionUser)
    def me(context: AuthContext = Depends(get_auth_context)) -> SessionUser:
        return SessionUser(
            id=context.user_id,
            email=context.email or context.user_id,
            roles=sorted(context.roles),
        )

    # vacancies

    @api.get("/vacancies", response_model=list[VacancyRecord])
    def list_vacancies(
        request: Request,
        _: AuthContext = Depends(require_roles(*STAFF_ROLES)),
    ) -> list[VacancyRecord]:
        return get_store(request).list_vacancies()

    @api.post("/vacancies", response_model=VacancyRecord, status_code=status.HTTP_201_CREATED)
    def create_vacancy(
        payload: VacancyCreateRequest,
        request: Request,
        context: AuthContext = Depends(require_roles(*STAFF_ROLES)),
    ) -> VacancyRecord:
        return get_store(request).create_vacancy(payload, created_by=context.user_id)

    @api.get("/vacancies/{vacancy_id}", response_model=VacancyRecord)
    def get_vacancy(
        vacancy_id: str,
        request: Request,
        _: AuthContext = Depends(require_roles(*STAFF_ROLES)),
    ) -> VacancyRecord:
        try:
            return get_store(request).get_vacancy(vacancy_id)
        except StoreNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    @api.patch("/vacancies/{vacancy_id}", response_model=VacancyRecord)
    def update_vacancy(
        vacancy_id: str,
        payload: VacancyUpdateRequest,
        request: Request,
        _: AuthContext = Depends(require_roles(*STAFF_ROLES)),
    ) -> VacancyRecord:
        try:
            return get_store(request).update_vacancy(vacancy_id, payload)
        except StoreNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    @api.delete("/vacancies/{vacancy_id}", status_code=status.HTTP_204_NO_CONTENT)
    def delete_vacancy(
        vacancy_id: str,
        request: Request,
        _: AuthContext = Depends(require_roles(*STAFF_ROLES)),
    ) -> Response:
        get_store(request).delete_vacancy(vacancy_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @api.get("/vacancies/{vacancy_id}/candidates", response_model=list[CandidateRecord])
    def list_vacancy_candidates(
        vacancy_id: str,
        request: Request,
        _: AuthContext = Depends(require_roles(*STAFF_ROLES)),
    ) -> list[CandidateRecord]:
        store = get_store(request)
        try:
            store.get_vacancy(vacancy_id)
        except StoreNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
        return store.list_candidates(vacancy_id=vacancy_id)

    # candidates

    @api.get("/candidates", response_model=list[CandidateRecord])
    def list_candidates(
        request: Request,
        vacancy_id: Optional[str] = Query(default=None, alias="vacancyId"),
        _: AuthContext = Depends(require_roles(*STAFF_ROLES)),
    ) -> list[CandidateRecord]:
        return get_store(request).list_candidates(vacancy_id=vacancy_id)

    @api.post("/candidates", response_model=CandidateRecord, status_code=status.HTTP_201_CREATED)
    def create_candidate(
        payload: CandidateCreateRequest,
        request: Request,
        _: AuthContext = Depends(require_roles(*STAFF_ROLES)),
    ) -> CandidateRecord:
        try:
            return get_store(request).create_candidate(payload)
        except StoreNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    @api.get("/candidates/{candidate_id}", response_model=CandidateRecord)
    def get_candidate(
        candidate_id: str,
        request: Request,
        _: AuthContext = Depends(require_roles(*STAFF_ROLES)),
    ) -> CandidateRecord:
        try:
            return get_store(request).get_candidate(candidate_id)
        except StoreNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    @api.patch("/candidates/{candidate_id}", response_model=CandidateRecord)
    def update_candidate(
        candidate_id: str,
        payload: CandidateUpdateRequest,
        request: Request,
        _: AuthContext = Depends(require_roles(*STAFF_ROLES)),
    ) -> CandidateRecord:
        try:
            return get_store(request).update_candidate(candidate_id, payload)
        except StoreNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    @api.delete("/candidates/{candidate_id}", status_code=status.HTTP_204_NO_CONTENT)
    def delete_candidate(
        candidate_id: str,
        request: Request,
        _: AuthContext = Depends(require_roles(*STAFF_ROLES)),
    ) -> Response:
        get_store(request).delete_candidate(candidate_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    # campaigns

    @api.get("/campaigns", response_model=list[CampaignRecord])
    def list_campaigns(
        request: Request,
        _: AuthContext = Depends(require_roles(*STAFF_ROLES)),
    ) -> list[CampaignRecord]:
        return get_store(request).list_campaigns()

    @api.post("/campaigns", response_model=CampaignRecord, status_code=status.HTTP_201_CREATED)
    def create_campaign(
        payload: CampaignCreateRequest,
        request: Request,
        context: AuthContext = Depends(require_roles(*STAFF_ROLES)),
    ) -> CampaignRecord:
        try:
            return get_store(request).create_campaign(payload, created_by=context.user_id)
        except StoreNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    @api.get("/campaigns/{campaign_id}", response_model=CampaignRecord)
    def get_campaign(
        campaign_id: str,
        request: Request,
        _: AuthContext = Depends(require_roles(*STAFF_ROLES)),
    ) -> CampaignRecord:
        try:
            return get_store(request).get_campaign(campaign_id)
        except StoreNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    @api.patch("/campaigns/{campaign_id}", response_model=CampaignRecord)
    def update_campaign(
        campaign_id: str,
        payload: CampaignUpdateRequest,
        request: Request,
        _: AuthContext = Depends(require_roles(*STAFF_ROLES)),
    ) -> CampaignRecord:
        store = get_store(request)
        changes = payload.model_dump(exclude_unset=True)
        to_status = changes.pop("status", None)
        try:
            with store.lock:
                campaign = store.get_campaign(campaign_id)
                if to_status is not None and not can_transition(campaign.status, to_status):
                    raise CampaignTransitionError(
                        "illegal campaign transition: "
                        f"{campaign.status.value} -> {to_status.value}"
                    )
                if changes:
                    campaign = store.update_campaign(campaign_id, changes)
                if to_status is not None:
                    campaign = transition_campaign(
                        store, campaign_id, to_status, reason="manual_update"
                    )
                return campaign
        except StoreNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
        except CampaignTransitionError as exc:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
        except StoreConflictError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    @api.delete("/campaigns/{campaign_id}", status_code=status.HTTP_204_NO_CONTENT)
    def delete_campaign(
        campaign_id: str,
        request: Request,
        _: AuthContext = Depends(require_roles(*STAFF_ROLES)),
    ) -> Response:
        get_store(request).delete_campaign(campaign_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @api.post("/campaigns/{campaign_id}/launch", response_model=LaunchResult)
    def launch_campaign(
        campaign_id: str,
        request: Request,
        _: AuthContext = Depends(require_roles(*STAFF_ROLES)),
    ):
        result = get_executor(request).launch(campaign_id)
        if not result.success:
            return JSONResponse(
                status_code=status.HTTP_400_BAD_REQUEST,
                content=result.model_dump(mode="json", by_alias=True),
            )
        return result

    @api.post("/campaigns/{campaign_id}/dispatch", response_model=DispatchResult)
    def dispatch_campaign(
        campaign_id: str,
        request: Request,
        _: AuthContext = Depends(require_roles(*STAFF_ROLES)),
    ) -> DispatchResult:
        try:
            return get_executor(request).dispatch(campaign_id)
        except StoreNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    @api.get("/campaigns/{campaign_id}/progress", response_model=CampaignProgressResponse)
    def get_campaign_progress(
        campaign_id: str,
        request: Request,
        _: AuthContext = Depends(require_roles(*STAFF_ROLES)),
    ) -> CampaignProgressResponse:
        store = get_store(request)
        try:
            campaign = store.get_campaign(campaign_id)
        except StoreNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
        return campaign_progress(store, campaign)

    @api.get(
        "/campaigns/{campaign_id}/history",
        response_model=list[CampaignAuditEventRecord],
    )
    def get_campaign_history(
        campaign_id: str,
        request: Request,
        _: AuthContext = Depends(require_roles(*STAFF_ROLES)),
    ) -> list[CampaignAuditEventRecord]:
        store = get_store(request)
        try:
            store.get_campaign(campaign_id)
        except StoreNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
        return store.list_campaign_audit_events(campaign_id)

    # calls

    @api.get("/calls", response_model=list[CallRecord])
    def list_calls(
        request: Request,
        candidate_id: Optional[str] = Query(default=None, alias="candidateId"),
        campaign_id: Optional[str] = Query(default=None, alias="campaignId"),
        limit: Optional[int] = Query(default=None, ge=1, le=1000),
        _: AuthContext = Depends(require_roles(*STAFF_ROLES)),
    ) -> list[CallRecord]:
        store = get_store(request)
        if candidate_id:
            calls = store.list_calls_by_candidate(candidate_id)
        elif campaign_id:
            calls = store.list_calls_by_campaign(campaign_id)
        else:
            calls = store.list_calls()
        return calls[:limit] if limit is not None else calls

    @api.post("/calls", response_model=CallRecord, status_code=status.HTTP_201_CREATED)
    def create_call(
        payload: CallCreateRequest,
        request: Request,
        _: AuthContext = Depends(require_roles(*STAFF_ROLES)),
    ) -> CallRecord:
        store = get_store(request)
        try:
            candidate = store.get_candidate(payload.candidate_id)
            if payload.campaign_id:
                store.get_campaign(payload.campaign_id)
        except StoreNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
        if not can_contact(store, candidate):
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail=(
                    f"candidate {candidate.id} cannot be called: consent not granted "
                    "or number is on the do-not-call list"
                ),
            )
        call = store.create_call(payload.model_copy(update={"outcome": None}))
        if payload.outcome is not None:
            call = record_call_outcome(
                store,
                call.id,
                CallUpdateRequest(outcome=payload.outcome),
                metrics=get_metrics(request),
            )
        return call

    @api.get("/calls/{call_id}", response_model=CallRecord)
    def get_call(
        call_id: str,
        request: Request,
        _: AuthContext = Depends(require_roles(*STAFF_ROLES)),
    ) -> CallRecord:
        try:
            return get_store(request).get_call(call_id)
        except StoreNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    @api.patch("/calls/{call_id}", response_model=CallRecord)
    def update_call(
        call_id: str,
        payload: CallUpdateRequest,
        request: Request,
        _: AuthContext = Depends(require_roles(*STAFF_ROLES)),
    ) -> CallRecord:
        try:
            return record_call_outcome(
                get_store(request), call_id, payload, metrics=get_metrics(request)
            )
        except StoreNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    # do-not-call list

    @api.get("/dnc", response_model=list[DncEntryRecord])
    def list_dnc(
        request: Request,
        _: AuthContext = Depends(require_roles(*STAFF_ROLES)),
    ) -> list[DncEntryRecord]:
        return get_store(request).list_dnc()

    @api.post("/dnc", response_model=DncEntryRecord, status_code=status.HTTP_201_CREATED)
    def add_dnc(
        payload: DncCreateRequest,
        request: Request,
        context: AuthContext = Depends(require_roles(*STAFF_ROLES)),
    ) -> DncEntryRecord:
        try:
            return get_store(request).add_dnc(payload, added_by=context.user_id)
        except StoreConflictError as exc:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc

    @api.get("/dnc/check/{phone}", response_model=DncCheckResponse)
    def check_dnc(
        phone: str,
        request: Request,
        _: AuthContext = Depends(require_roles(*STAFF_ROLES)),
    ) -> DncCheckResponse:
        return DncCheckResponse(phone=phone, is_dnc=get_store(request).is_on_dnc(phone))

    @api.delete("/dnc/{entry_id_or_phone}", status_code=status.HTTP_204_NO_CONTENT)
    def remove_dnc(
        entry_id_or_phone: str,
        request: Request,
        _: AuthContext = Depends(require_roles(*STAFF_ROLES)),
    ) -> Response:
        get_store(request).remove_dnc(entry_id_or_phone)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    # settings

    @api.get("/settings", response_model=list[SettingRecord])
    def list_settings(
        request: Request,
        _: AuthContext = Depends(require_roles(*STAFF_ROLES)),
    ) -> list[SettingRecord]:
        return get_store(request).list_settings()

    @api.post("/settings", response_model=SettingRecord)
    def upsert_setting(
        payload: SettingUpdateRequest,
        request: Request,
        _: AuthContext = Depends(require_roles("admin")),
    ) -> SettingRecord:
        return get_store(request).set_setting(payload.key.strip(), payload.value)

    @api.get("/settings/mock-mode", response_model=MockModeResponse)
    def get_mock_mode(
        request: Request,
        _: AuthContext = Depends(require_roles(*STAFF_ROLES)),
    ) -> MockModeResponse:
        return MockModeResponse(enabled=is_mock_mode(get_store(request)))

    @api.post("/settings/mock-mode", response_model=MockModeResponse)
    def set_mock_mode(
        payload: MockModeRequest,
        request: Request,
        _: AuthContext = Depends(require_roles(*STAFF_ROLES)),
    ) -> MockModeResponse:
        get_store(request).set_setting(MOCK_MODE_SETTING, payload.enabled)
        logger.info("mock_mode_changed enabled=%s", payload.enabled)
        return MockModeResponse(enabled=payload.enabled)

    # integrations

    @api.get("/health", response_model=HealthResponse)
    def integration_health(request: Request) -> HealthResponse:
        persistence = getattr(get_store(request), "persistence", None)
        return HealthResponse(
            database=bool(persistence and persistence.ping()),
            **connector_status(get_settings(request)).model_dump(),
        )

    @api.get("/connectors/test", response_model=ConnectorStatusResponse)
    def connectors_check(request: Request) -> ConnectorStatusResponse:
        return connector_status(get_settings(request))

    @api.post("/webhooks/vapi", response_model=WebhookAckResponse)
    async def vapi_webhook(request: Request) -> WebhookAckResponse:
        return await _handle_webhook(request, "vapi")

    @api.post("/webhooks/twilio", response_model=WebhookAckResponse)
    async def twilio_webhook(request: Request) -> WebhookAckResponse:
        return await _handle_webhook(request, "twilio")

    @api.post("/webhooks/ghl", response_model=WebhookAckResponse)
    async def ghl_webhook(request: Request) -> WebhookAckResponse:
        return await _handle_webhook(request, "ghl")

    # dashboard

    @api.get("/dashboard/stats", response_model=DashboardStatsResponse)
    def dashboard_stats(
        request: Request,
        _: AuthContext = Depends(require_roles(*STAFF_ROLES)),
    ) -> DashboardStatsResponse:
        return DashboardStatsResponse(**get_store(request).dashboard_stats())

    router.include_router(api)
    return router


app = create_app()
