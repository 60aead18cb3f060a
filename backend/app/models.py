from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

E164_PATTERN = r"^\+[1-9]\d{6,14}$"
EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"
WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")


def utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _validate_hhmm(value: str) -> str:
    parts = value.strip().split(":")
    if len(parts) != 2 or not all(part.isdigit() for part in parts):
        raise ValueError("time must use 24h HH:MM")
    hour, minute = int(parts[0]), int(parts[1])
    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        raise ValueError("time must use 24h HH:MM")
    return f"{hour:02d}:{minute:02d}"


def _validate_days(values: list[str]) -> list[str]:
    normalized = [value.strip().lower() for value in values]
    unknown = [value for value in normalized if value not in WEEKDAYS]
    if unknown:
        raise ValueError(f"unknown weekday names: {unknown}")
    return list(dict.fromkeys(normalized))


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class VacancyStatus(str, Enum):
    draft = "draft"
    active = "active"
    paused = "paused"
    closed = "closed"
    filled = "filled"


class CandidateStatus(str, Enum):
    new = "new"
    screening = "screening"
    interview = "interview"
    offer = "offer"
    hired = "hired"
    rejected = "rejected"
    pool = "pool"


class ConsentStatus(str, Enum):
    pending = "pending"
    granted = "granted"
    revoked = "revoked"


class CampaignStatus(str, Enum):
    draft = "draft"
    scheduled = "scheduled"
    running = "running"
    paused = "paused"
    completed = "completed"
    cancelled = "cancelled"


class CallOutcome(str, Enum):
    interested = "interested"
    not_interested = "not_interested"
    no_answer = "no_answer"
    busy = "busy"
    voicemail = "voicemail"
    opt_out = "opt_out"
    callback = "callback"
    error = "error"


class EnrollmentStatus(str, Enum):
    pending = "pending"
    dialing = "dialing"
    retry_scheduled = "retry_scheduled"
    completed = "completed"
    failed = "failed"
    skipped = "skipped"


OPEN_ENROLLMENT_STATUSES = {
    EnrollmentStatus.pending,
    EnrollmentStatus.dialing,
    EnrollmentStatus.retry_scheduled,
}


class LoginRequest(ApiModel):
    email: str = Field(min_length=3, max_length=254)
    password: str = Field(min_length=1, max_length=200)


class SessionUser(ApiModel):
    id: str
    email: str
    roles: list[str]


class LoginResponse(ApiModel):
    session_id: str
    user: SessionUser
    expires_at_utc: datetime


class VacancyCreateRequest(ApiModel):
    title: str = Field(min_length=2, max_length=160)
    department: str = Field(min_length=1, max_length=120)
    location: str = Field(min_length=1, max_length=160)
    description: Optional[str] = None
    requirements: Optional[str] = None
    salary: Optional[str] = Field(default=None, max_length=120)
    status: VacancyStatus = VacancyStatus.draft


class VacancyUpdateRequest(ApiModel):
    title: Optional[str] = Field(default=None, min_length=2, max_length=160)
    department: Optional[str] = Field(default=None, min_length=1, max_length=120)
    location: Optional[str] = Field(default=None, min_length=1, max_length=160)
    description: Optional[str] = None
    requirements: Optional[str] = None
    salary: Optional[str] = Field(default=None, max_length=120)
    status: Optional[VacancyStatus] = None


class VacancyRecord(ApiModel):
    id: str
    title: str
    department: str
    location: str
    description: Optional[str] = None
    requirements: Optional[str] = None
    salary: Optional[str] = None
    status: VacancyStatus = VacancyStatus.draft
    created_by: Optional[str] = None
    created_at_utc: datetime
    updated_at_utc: datetime


class CandidateCreateRequest(ApiModel):
    name: str = Field(min_length=2, max_length=120)
    email: str = Field(pattern=EMAIL_PATTERN, max_length=254)
    phone: str = Field(pattern=E164_PATTERN)
    cv_url: Optional[str] = Field(default=None, max_length=500)
    linkedin_url: Optional[str] = Field(default=None, max_length=500)
    tags: list[str] = Field(default_factory=list)
    custom_fields: dict[str, str] = Field(default_factory=dict)
    status: CandidateStatus = CandidateStatus.new
    vacancy_id: Optional[str] = None
    consent_status: ConsentStatus = ConsentStatus.pending
    consent_timestamp: Optional[datetime] = None
    consent_source: Optional[str] = Field(default=None, max_length=120)
    is_dnc: bool = False
    dnc_timestamp: Optional[datetime] = None
    notes: Optional[str] = None


class CandidateUpdateRequest(ApiModel):
    name: Optional[str] = Field(default=None, min_length=2, max_length=120)
    email: Optional[str] = Field(default=None, pattern=EMAIL_PATTERN, max_length=254)
    phone: Optional[str] = Field(default=None, pattern=E164_PATTERN)
    cv_url: Optional[str] = Field(default=None, max_length=500)
    linkedin_url: Optional[str] = Field(default=None, max_length=500)
    tags: Optional[list[str]] = None
    custom_fields: Optional[dict[str, str]] = None
    status: Optional[CandidateStatus] = None
    vacancy_id: Optional[str] = None
    consent_status: Optional[ConsentStatus] = None
    consent_timestamp: Optional[datetime] = None
    consent_source: Optional[str] = Field(default=None, max_length=120)
    is_dnc: Optional[bool] = None
    dnc_timestamp: Optional[datetime] = None
    notes: Optional[str] = None


class CandidateRecord(ApiModel):
    id: str
    name: str
    email: str
    phone: str
    cv_url: Optional[str] = None
    linkedin_url: Optional[str] = None
    tags: list[str] = Field(default_factory=list)
    custom_fields: dict[str, str] = Field(default_factory=dict)
    status: CandidateStatus = CandidateStatus.new
    vacancy_id: Optional[str] = None
    consent_status: ConsentStatus = ConsentStatus.pending
    consent_timestamp: Optional[datetime] = None
    consent_source: Optional[str] = None
    is_dnc: bool = False
    dnc_timestamp: Optional[datetime] = None
    notes: Optional[str] = None
    created_at_utc: datetime
    updated_at_utc: datetime


class CampaignCreateRequest(ApiModel):
    name: str = Field(min_length=2, max_length=160)
    description: Optional[str] = None
    status: CampaignStatus = CampaignStatus.draft
    vacancy_id: Optional[str] = None
    script_template: str = Field(min_length=1)
    call_window_start: str = "09:00"
    call_window_end: str = "18:00"
    call_window_days: list[str] = Field(default_factory=lambda: list(WEEKDAYS[:5]))
    max_concurrent_calls: int = Field(default=10, ge=1, le=500)
    retry_limit: int = Field(default=2, ge=0, le=10)
    retry_delay_minutes: int = Field(default=60, ge=1, le=10080)
    total_candidates: Optional[int] = Field(default=None, ge=0)
    candidate_ids: list[str] = Field(default_factory=list)
    scheduled_at: Optional[datetime] = None

    @field_validator("call_window_start", "call_window_end")
    @classmethod
    def validate_window_time(cls, value: str) -> str:
        return _validate_hhmm(value)

    @field_validator("call_window_days")
    @classmethod
    def validate_window_days(cls, value: list[str]) -> list[str]:
        return _validate_days(value)

    @model_validator(mode="after")
    def validate_initial_status(self) -> "CampaignCreateRequest":
        if self.status not in {CampaignStatus.draft, CampaignStatus.scheduled}:
            raise ValueError("a new campaign must start as draft or scheduled")
        if self.call_window_start >= self.call_window_end:
            raise ValueError("callWindowStart must be earlier than callWindowEnd")
        return self


class CampaignUpdateRequest(ApiModel):
    name: Optional[str] = Field(default=None, min_length=2, max_length=160)
    description: Optional[str] = None
    status: Optional[CampaignStatus] = None
    vacancy_id: Optional[str] = None
    script_template: Optional[str] = Field(default=None, min_length=1)
    call_window_start: Optional[str] = None
    call_window_end: Optional[str] = None
    call_window_days: Optional[list[str]] = None
    max_concurrent_calls: Optional[int] = Field(default=None, ge=1, le=500)
    retry_limit: Optional[int] = Field(default=None, ge=0, le=10)
    retry_delay_minutes: Optional[int] = Field(default=None, ge=1, le=10080)
    scheduled_at: Optional[datetime] = None

    @field_validator("call_window_start", "call_window_end")
    @classmethod
    def validate_window_time(cls, value: Optional[str]) -> Optional[str]:
        return _validate_hhmm(value) if value is not None else None

    @field_validator("call_window_days")
    @classmethod
    def validate_window_days(cls, value: Optional[list[str]]) -> Optional[list[str]]:
        return _validate_days(value) if value is not None else None


class CampaignRecord(ApiModel):
    id: str
    name: str
    description: Optional[str] = None
    status: CampaignStatus = CampaignStatus.draft
    vacancy_id: Optional[str] = None
    script_template: str
    call_window_start: str = "09:00"
    call_window_end: str = "18:00"
    call_window_days: list[str] = Field(default_factory=lambda: list(WEEKDAYS[:5]))
    max_concurrent_calls: int = 10
    retry_limit: int = 2
    retry_delay_minutes: int = 60
    total_candidates: int = 0
    completed_calls: int = 0
    successful_calls: int = 0
    failed_calls: int = 0
    created_by: Optional[str] = None
    scheduled_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at_utc: datetime
    updated_at_utc: datetime


class CampaignCandidateRecord(ApiModel):
    id: str
    campaign_id: str
    candidate_id: str
    status: EnrollmentStatus = EnrollmentStatus.pending
    attempts: int = 0
    last_attempt_at: Optional[datetime] = None
    next_attempt_at: Optional[datetime] = None
    created_at_utc: datetime


class CampaignAuditEventRecord(ApiModel):
    id: str
    campaign_id: str
    from_status: Optional[CampaignStatus]
    to_status: CampaignStatus
    reason: str
    created_at_utc: datetime


class CampaignProgressResponse(ApiModel):
    campaign_id: str
    status: CampaignStatus
    queued: int
    in_progress: int
    completed: int
    failed: int


class LaunchResult(ApiModel):
    success: bool
    calls_created: int = 0
    mock_mode: bool = False
    message: str


class DispatchResult(ApiModel):
    campaign_id: str
    dispatched: int = 0
    skipped: int = 0
    failed: int = 0
    in_flight: int = 0
    reason: str


class CallCreateRequest(ApiModel):
    candidate_id: str
    campaign_id: Optional[str] = None
    provider_call_id: Optional[str] = Field(default=None, max_length=200)
    twilio_call_sid: Optional[str] = Field(default=None, max_length=200)
    outcome: Optional[CallOutcome] = None
    duration: Optional[int] = Field(default=None, ge=0)
    audio_url: Optional[str] = None
    transcript: Optional[str] = None
    summary: Optional[str] = None
    sentiment: Optional[str] = Field(default=None, max_length=40)
    confidence: Optional[int] = Field(default=None, ge=0, le=100)
    extracted_data: Optional[dict[str, Any]] = None
    recommended_action: Optional[str] = None
    scheduled_interview_at: Optional[datetime] = None
    error_message: Optional[str] = None


class CallUpdateRequest(ApiModel):
    outcome: Optional[CallOutcome] = None
    duration: Optional[int] = Field(default=None, ge=0)
    audio_url: Optional[str] = None
    transcript: Optional[str] = None
    summary: Optional[str] = None
    sentiment: Optional[str] = Field(default=None, max_length=40)
    confidence: Optional[int] = Field(default=None, ge=0, le=100)
    extracted_data: Optional[dict[str, Any]] = None
    recommended_action: Optional[str] = None
    scheduled_interview_at: Optional[datetime] = None
    crm_synced: Optional[bool] = None
    crm_synced_at: Optional[datetime] = None
    error_message: Optional[str] = None


class CallRecord(ApiModel):
    id: str
    campaign_id: Optional[str] = None
    candidate_id: Optional[str] = None
    provider_call_id: Optional[str] = None
    twilio_call_sid: Optional[str] = None
    outcome: Optional[CallOutcome] = None
    duration: Optional[int] = None
    audio_url: Optional[str] = None
    transcript: Optional[str] = None
    summary: Optional[str] = None
    sentiment: Optional[str] = None
    confidence: Optional[int] = None
    extracted_data: Optional[dict[str, Any]] = None
    recommended_action: Optional[str] = None
    scheduled_interview_at: Optional[datetime] = None
    crm_synced: bool = False
    crm_synced_at: Optional[datetime] = None
    error_message: Optional[str] = None
    counted_in_campaign: bool = False
    created_at_utc: datetime
    updated_at_utc: datetime


class DncCreateRequest(ApiModel):
    phone: str = Field(min_length=7, max_length=20)
    reason: Optional[str] = Field(default=None, max_length=200)
    source: Optional[str] = Field(default=None, max_length=80)


class DncEntryRecord(ApiModel):
    id: str
    phone: str
    reason: Optional[str] = None
    source: Optional[str] = None
    added_by: Optional[str] = None
    created_at_utc: datetime


class DncCheckResponse(ApiModel):
    phone: str
    is_dnc: bool


class SettingRecord(ApiModel):
    key: str
    value: Any = None
    updated_at_utc: datetime


class SettingUpdateRequest(ApiModel):
    key: str = Field(min_length=1, max_length=120)
    value: Any = None


class MockModeRequest(ApiModel):
    enabled: bool


class MockModeResponse(ApiModel):
    enabled: bool


class WebhookEventRecord(ApiModel):
    id: str
    event_id: str
    source: str
    event_type: str
    payload: Any = None
    processed: bool = False
    processed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    created_at_utc: datetime


class WebhookAckResponse(ApiModel):
    success: bool = True
    duplicate: bool = False
    event_id: str
    detail: Optional[str] = None


class ConnectorStatusResponse(ApiModel):
    openai: bool
    vapi: bool
    twilio: bool
    ghl: bool


class HealthResponse(ConnectorStatusResponse):
    database: bool


class DashboardStatsResponse(ApiModel):
    total_applications: int
    interviews_scheduled: int
    placements: int
    active_campaigns: int
    calls_today: int
    success_rate: int


class SessionRecord(ApiModel):
    id: str
    user_id: str
    email: str
    roles: list[str]
    expires_at_utc: datetime
    created_at_utc: datetime
