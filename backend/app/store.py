from __future__ import annotations

from datetime import datetime, time
from threading import RLock
from typing import TYPE_CHECKING, Any, Optional
from uuid import uuid4

from pydantic import BaseModel

from backend.app.models import (
    CallCreateRequest,
    CallOutcome,
    CallRecord,
    CampaignAuditEventRecord,
    CampaignCandidateRecord,
    CampaignCreateRequest,
    CampaignRecord,
    CampaignStatus,
    CandidateCreateRequest,
    CandidateRecord,
    CandidateStatus,
    CandidateUpdateRequest,
    ConsentStatus,
    DncCreateRequest,
    DncEntryRecord,
    EnrollmentStatus,
    SettingRecord,
    VacancyCreateRequest,
    VacancyRecord,
    VacancyUpdateRequest,
    WebhookEventRecord,
    utc_now,
)

if TYPE_CHECKING:
    from backend.app.persistence import SqlPersistence


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid4().hex[:10]}"


def _needs_apply(event: WebhookEventRecord) -> bool:
    return not event.processed and event.error_message is None


class StoreConflictError(Exception):
    pass


class StoreNotFoundError(Exception):
    pass


class InMemoryStore:
    def __init__(self, persistence: Optional["SqlPersistence"] = None) -> None:
        self._lock = RLock()
        self.persistence = persistence
        self.vacancies: dict[str, VacancyRecord] = {}
        self.candidates: dict[str, CandidateRecord] = {}
        self.campaigns: dict[str, CampaignRecord] = {}
        self.enrollments: dict[str, CampaignCandidateRecord] = {}
        self.calls: dict[str, CallRecord] = {}
        self.dnc_entries: dict[str, DncEntryRecord] = {}
        self.settings: dict[str, SettingRecord] = {}
        self.webhook_events: dict[str, WebhookEventRecord] = {}
        self.campaign_audit_events: list[CampaignAuditEventRecord] = []

        if self.persistence:
            self._hydrate()

    @property
    def lock(self):
        """Re-entrant write lock; hold it to make a read-check-write sequence atomic."""
        return self._lock

    # vacancies

    def list_vacancies(self) -> list[VacancyRecord]:
        return sorted(self.vacancies.values(), key=lambda item: item.created_at_utc, reverse=True)

    def get_vacancy(self, vacancy_id: str) -> VacancyRecord:
        vacancy = self.vacancies.get(vacancy_id)
        if not vacancy:
            raise StoreNotFoundError(f"vacancy not found: {vacancy_id}")
        return vacancy

    def create_vacancy(
        self, request: VacancyCreateRequest, *, created_by: Optional[str] = None
    ) -> VacancyRecord:
        with self._lock:
            now = utc_now()
            vacancy = VacancyRecord(
                id=new_id("vac"),
                title=request.title.strip(),
                department=request.department.strip(),
                location=request.location.strip(),
                description=request.description,
                requirements=request.requirements,
                salary=request.salary,
                status=request.status,
                created_by=created_by,
                created_at_utc=now,
                updated_at_utc=now,
            )
            self._write("vacancies", vacancy)
            self.vacancies[vacancy.id] = vacancy
            return vacancy

    def update_vacancy(self, vacancy_id: str, request: VacancyUpdateRequest) -> VacancyRecord:
        with self._lock:
            vacancy = self.get_vacancy(vacancy_id)
            changes = request.model_dump(exclude_unset=True)
            updated = vacancy.model_copy(update={**changes, "updated_at_utc": utc_now()})
            self._write("vacancies", updated)
            self.vacancies[vacancy_id] = updated
            return updated

    def delete_vacancy(self, vacancy_id: str) -> None:
        with self._lock:
            self._remove("vacancies", vacancy_id)
            self.vacancies.pop(vacancy_id, None)

    # candidates

    def list_candidates(self, *, vacancy_id: Optional[str] = None) -> list[CandidateRecord]:
        candidates = [
            candidate
            for candidate in self.candidates.values()
            if vacancy_id is None or candidate.vacancy_id == vacancy_id
        ]
        return sorted(candidates, key=lambda item: item.created_at_utc, reverse=True)

    def get_candidate(self, candidate_id: str) -> CandidateRecord:
        candidate = self.candidates.get(candidate_id)
        if not candidate:
            raise StoreNotFoundError(f"candidate not found: {candidate_id}")
        return candidate

    def create_candidate(self, request: CandidateCreateRequest) -> CandidateRecord:
        with self._lock:
            if request.vacancy_id:
                self.get_vacancy(request.vacancy_id)
            now = utc_now()
            consent_timestamp = request.consent_timestamp
            if consent_timestamp is None and request.consent_status != ConsentStatus.pending:
                consent_timestamp = now
            dnc_timestamp = request.dnc_timestamp
            if dnc_timestamp is None and request.is_dnc:
                dnc_timestamp = now
            candidate = CandidateRecord(
                id=new_id("cand"),
                name=request.name.strip(),
                email=request.email.strip().lower(),
                phone=request.phone.strip(),
                cv_url=request.cv_url,
                linkedin_url=request.linkedin_url,
                tags=request.tags,
                custom_fields=request.custom_fields,
                status=request.status,
                vacancy_id=request.vacancy_id,
                consent_status=request.consent_status,
                consent_timestamp=consent_timestamp,
                consent_source=request.consent_source,
                is_dnc=request.is_dnc,
                dnc_timestamp=dnc_timestamp,
                notes=request.notes,
                created_at_utc=now,
                updated_at_utc=now,
            )
            self._write("candidates", candidate)
            self.candidates[candidate.id] = candidate
            return candidate

    def update_candidate(
        self, candidate_id: str, request: CandidateUpdateRequest
    ) -> CandidateRecord:
        with self._lock:
            candidate = self.get_candidate(candidate_id)
            changes = request.model_dump(exclude_unset=True)
            now = utc_now()
            if (
                "consent_status" in changes
                and changes["consent_status"] != candidate.consent_status
                and not changes.get("consent_timestamp")
            ):
                changes["consent_timestamp"] = now
            if changes.get("is_dnc") and not candidate.is_dnc and not changes.get("dnc_timestamp"):
                changes["dnc_timestamp"] = now
            if changes.get("is_dnc") is False:
                changes["dnc_timestamp"] = None
            updated = candidate.model_copy(update={**changes, "updated_at_utc": now})
            self._write("candidates", updated)
            self.candidates[candidate_id] = updated
            return updated

    def mark_candidate_dnc(self, candidate_id: str) -> CandidateRecord:
        return self.update_candidate(candidate_id, CandidateUpdateRequest(is_dnc=True))

    def delete_candidate(self, candidate_id: str) -> None:
        with self._lock:
            self._remove("candidates", candidate_id)
            self.candidates.pop(candidate_id, None)

    # campaigns

    def list_campaigns(self) -> list[CampaignRecord]:
        return sorted(self.campaigns.values(), key=lambda item: item.created_at_utc, reverse=True)

    def get_campaign(self, campaign_id: str) -> CampaignRecord:
        campaign = self.campaigns.get(campaign_id)
        if not campaign:
            raise StoreNotFoundError(f"campaign not found: {campaign_id}")
        return campaign

    def create_campaign(
        self, request: CampaignCreateRequest, *, created_by: Optional[str] = None
    ) -> CampaignRecord:
        with self._lock:
            if request.vacancy_id:
                self.get_vacancy(request.vacancy_id)
            candidate_ids = list(dict.fromkeys(request.candidate_ids))
            for candidate_id in candidate_ids:
                self.get_candidate(candidate_id)
            total = request.total_candidates
            if total is None:
                total = len(candidate_ids)
            now = utc_now()
            campaign = CampaignRecord(
                id=new_id("cmp"),
                name=request.name.strip(),
                description=request.description,
                status=request.status,
                vacancy_id=request.vacancy_id,
                script_template=request.script_template,
                call_window_start=request.call_window_start,
                call_window_end=request.call_window_end,
                call_window_days=request.call_window_days,
                max_concurrent_calls=request.max_concurrent_calls,
                retry_limit=request.retry_limit,
                retry_delay_minutes=request.retry_delay_minutes,
                total_candidates=total,
                created_by=created_by,
                scheduled_at=request.scheduled_at,
                created_at_utc=now,
                updated_at_utc=now,
            )
            enrollments = [
                self._new_enrollment(campaign.id, candidate_id, now)
                for candidate_id in candidate_ids
            ]
            self._write_many(
                [("campaigns", campaign)]
                + [("campaign_candidates", enrollment) for enrollment in enrollments]
            )
            self.campaigns[campaign.id] = campaign
            for enrollment in enrollments:
                self.enrollments[enrollment.id] = enrollment
            self._add_audit_event(
                campaign_id=campaign.id,
                from_status=None,
                to_status=campaign.status,
                reason="campaign_created",
            )
            return campaign

    def update_campaign(self, campaign_id: str, changes: dict[str, Any]) -> CampaignRecord:
        with self._lock:
            campaign = self.get_campaign(campaign_id)
            updated = campaign.model_copy(update={**changes, "updated_at_utc": utc_now()})
            if updated.call_window_start >= updated.call_window_end:
                raise StoreConflictError("callWindowStart must be earlier than callWindowEnd")
            self._write("campaigns", updated)
            self.campaigns[campaign_id] = updated
            return updated

    def set_campaign_status(
        self,
        campaign_id: str,
        to_status: CampaignStatus,
        *,
        reason: str,
        changes: Optional[dict[str, Any]] = None,
    ) -> CampaignRecord:
        with self._lock:
            campaign = self.get_campaign(campaign_id)
            updated = self.update_campaign(campaign_id, {**(changes or {}), "status": to_status})
            self._add_audit_event(
                campaign_id=campaign_id,
                from_status=campaign.status,
                to_status=to_status,
                reason=reason,
            )
            return updated

    def complete_campaign_run(
        self,
        campaign_id: str,
        *,
        steps: list[tuple[CampaignStatus, str]],
        calls: list[CallRecord],
        changes: dict[str, Any],
    ) -> CampaignRecord:
        """Save ``calls`` and walk the campaign through ``steps`` in one write.

        Nothing is visible in memory until the write succeeded, so a failure leaves
        the campaign in its previous status.
        """
        with self._lock:
            campaign = self.get_campaign(campaign_id)
            now = utc_now()
            events: list[CampaignAuditEventRecord] = []
            from_status = campaign.status
            for to_status, reason in steps:
                events.append(
                    CampaignAuditEventRecord(
                        id=new_id("aud"),
                        campaign_id=campaign_id,
                        from_status=from_status,
                        to_status=to_status,
                        reason=reason,
                        created_at_utc=now,
                    )
                )
                from_status = to_status
            updated = campaign.model_copy(
                update={**changes, "status": from_status, "updated_at_utc": now}
            )
            self._write_many(
                [("calls", call) for call in calls]
                + [("campaigns", updated)]
                + [("campaign_audit_events", event) for event in events]
            )
            for call in calls:
                self.calls[call.id] = call
            self.campaigns[campaign_id] = updated
            self.campaign_audit_events.extend(events)
            return updated

    def delete_campaign(self, campaign_id: str) -> None:
        with self._lock:
            self._remove("campaigns", campaign_id)
            self.campaigns.pop(campaign_id, None)

    def list_campaign_audit_events(self, campaign_id: str) -> list[CampaignAuditEventRecord]:
        return [
            event for event in self.campaign_audit_events if event.campaign_id == campaign_id
        ]

    # enrollments

    def enroll_candidates(
        self, campaign_id: str, candidate_ids: list[str]
    ) -> list[CampaignCandidateRecord]:
        with self._lock:
            existing = {
                enrollment.candidate_id: enrollment
                for enrollment in self.list_enrollments(campaign_id)
            }
            now = utc_now()
            created: list[CampaignCandidateRecord] = []
            for candidate_id in dict.fromkeys(candidate_ids):
                if candidate_id not in existing:
                    created.append(self._new_enrollment(campaign_id, candidate_id, now))
            self._write_many([("campaign_candidates", enrollment) for enrollment in created])
            for enrollment in created:
                self.enrollments[enrollment.id] = enrollment
                existing[enrollment.candidate_id] = enrollment
            return [existing[candidate_id] for candidate_id in dict.fromkeys(candidate_ids)]

    def list_enrollments(self, campaign_id: str) -> list[CampaignCandidateRecord]:
        enrollments = [
            enrollment
            for enrollment in self.enrollments.values()
            if enrollment.campaign_id == campaign_id
        ]
        return sorted(enrollments, key=lambda item: item.created_at_utc)

    def get_enrollment(
        self, campaign_id: str, candidate_id: str
    ) -> Optional[CampaignCandidateRecord]:
        for enrollment in self.enrollments.values():
            if enrollment.campaign_id == campaign_id and enrollment.candidate_id == candidate_id:
                return enrollment
        return None

    def save_enrollment(self, enrollment: CampaignCandidateRecord) -> CampaignCandidateRecord:
        with self._lock:
            self._write("campaign_candidates", enrollment)
            self.enrollments[enrollment.id] = enrollment
            return enrollment

    def claim_due_enrollments(
        self, campaign_id: str, *, now: datetime, limit: int
    ) -> list[CampaignCandidateRecord]:
        """Move up to ``limit`` due enrollments to dialing and count the attempt."""
        if limit <= 0:
            return []
        with self._lock:
            due = [
                enrollment
                for enrollment in self.list_enrollments(campaign_id)
                if enrollment.status == EnrollmentStatus.pending
                or (
                    enrollment.status == EnrollmentStatus.retry_scheduled
                    and enrollment.next_attempt_at is not None
                    and enrollment.next_attempt_at <= now
                )
            ][:limit]
            claimed = [
                enrollment.model_copy(
                    update={
                        "status": EnrollmentStatus.dialing,
                        "attempts": enrollment.attempts + 1,
                        "last_attempt_at": now,
                        "next_attempt_at": None,
                    }
                )
                for enrollment in due
            ]
            self._write_many([("campaign_candidates", enrollment) for enrollment in claimed])
            for enrollment in claimed:
                self.enrollments[enrollment.id] = enrollment
            return claimed

    # calls

    def list_calls(self, *, limit: Optional[int] = None) -> list[CallRecord]:
        calls = sorted(self.calls.values(), key=lambda item: item.created_at_utc, reverse=True)
        if limit is not None:
            calls = calls[: max(0, limit)]
        return calls

    def list_calls_by_candidate(self, candidate_id: str) -> list[CallRecord]:
        return [call for call in self.list_calls() if call.candidate_id == candidate_id]

    def list_calls_by_campaign(self, campaign_id: str) -> list[CallRecord]:
        return [call for call in self.list_calls() if call.campaign_id == campaign_id]

    def get_call(self, call_id: str) -> CallRecord:
        call = self.calls.get(call_id)
        if not call:
            raise StoreNotFoundError(f"call not found: {call_id}")
        return call

    def find_call_by_provider_id(self, provider_call_id: str) -> Optional[CallRecord]:
        for call in self.calls.values():
            if provider_call_id in {call.provider_call_id, call.twilio_call_sid}:
                return call
        return None

    def create_call(self, request: CallCreateRequest) -> CallRecord:
        now = utc_now()
        call = CallRecord(
            id=new_id("call"),
            **request.model_dump(),
            created_at_utc=now,
            updated_at_utc=now,
        )
        return self.save_call(call)

    def build_call(self, **fields: Any) -> CallRecord:
        now = utc_now()
        return CallRecord(id=new_id("call"), created_at_utc=now, updated_at_utc=now, **fields)

    def save_call(self, call: CallRecord) -> CallRecord:
        with self._lock:
            self._write("calls", call)
            self.calls[call.id] = call
            return call

    def save_call_with_enrollment(
        self, call: CallRecord, enrollment: CampaignCandidateRecord
    ) -> CallRecord:
        with self._lock:
            self._write_many([("calls", call), ("campaign_candidates", enrollment)])
            self.calls[call.id] = call
            self.enrollments[enrollment.id] = enrollment
            return call

    def save_calls(self, calls: list[CallRecord]) -> list[CallRecord]:
        with self._lock:
            self._write_many([("calls", call) for call in calls])
            for call in calls:
                self.calls[call.id] = call
            return calls

    def finalize_contact(
        self,
        *,
        campaign_id: str,
        successful: bool,
        call: Optional[CallRecord] = None,
        enrollment: Optional[CampaignCandidateRecord] = None,
    ) -> tuple[CampaignRecord, bool]:
        """Count one finished contact and save the related call/enrollment together.

        Returns the campaign and whether the counters moved. Counters never pass
        ``total_candidates``; past that point the call and enrollment are still saved.
        """
        with self._lock:
            campaign = self.get_campaign(campaign_id)
            now = utc_now()
            counted_call = (
                call.model_copy(update={"counted_in_campaign": True, "updated_at_utc": now})
                if call
                else None
            )
            records: list[tuple[str, BaseModel]] = []
            if counted_call:
                records.append(("calls", counted_call))
            if enrollment:
                records.append(("campaign_candidates", enrollment))

            if self.persistence:
                counters = self.persistence.finalize_contact(
                    campaign_id=campaign_id,
                    successful=successful,
                    now=now,
                    records=records,
                )
            elif campaign.completed_calls < campaign.total_candidates:
                counters = (
                    campaign.completed_calls + 1,
                    campaign.successful_calls + (1 if successful else 0),
                    campaign.failed_calls + (0 if successful else 1),
                )
            else:
                counters = None

            if counters is None:
                if call:
                    self.save_call(call)
                if enrollment:
                    self.save_enrollment(enrollment)
                return campaign, False

            completed, succeeded, failed = counters
            updated = campaign.model_copy(
                update={
                    "completed_calls": completed,
                    "successful_calls": succeeded,
                    "failed_calls": failed,
                    "updated_at_utc": now,
                }
            )
            self.campaigns[campaign_id] = updated
            if counted_call:
                self.calls[counted_call.id] = counted_call
            if enrollment:
                self.enrollments[enrollment.id] = enrollment
            return updated, True

    # dnc

    def list_dnc(self) -> list[DncEntryRecord]:
        return sorted(self.dnc_entries.values(), key=lambda item: item.created_at_utc, reverse=True)

    def add_dnc(self, request: DncCreateRequest, *, added_by: Optional[str] = None) -> DncEntryRecord:
        with self._lock:
            phone = request.phone.strip()
            if self.is_on_dnc(phone):
                raise StoreConflictError(f"phone already on do-not-call list: {phone}")
            entry = DncEntryRecord(
                id=new_id("dnc"),
                phone=phone,
                reason=request.reason,
                source=request.source,
                added_by=added_by,
                created_at_utc=utc_now(),
            )
            self._write("dnc_entries", entry)
            self.dnc_entries[entry.id] = entry
            return entry

    def remove_dnc(self, entry_id_or_phone: str) -> None:
        with self._lock:
            entry = self.dnc_entries.get(entry_id_or_phone)
            if entry is None:
                entry = next(
                    (item for item in self.dnc_entries.values() if item.phone == entry_id_or_phone),
                    None,
                )
            if entry is None:
                return
            self._remove("dnc_entries", entry.id)
            self.dnc_entries.pop(entry.id, None)

    def is_on_dnc(self, phone: str) -> bool:
        return any(entry.phone == phone for entry in self.dnc_entries.values())

    # settings

    def list_settings(self) -> list[SettingRecord]:
        return sorted(self.settings.values(), key=lambda item: item.key)

    def get_setting(self, key: str) -> Optional[SettingRecord]:
        return self.settings.get(key)

    def set_setting(self, key: str, value: Any) -> SettingRecord:
        with self._lock:
            setting = SettingRecord(key=key, value=value, updated_at_utc=utc_now())
            self._write("settings", setting)
            self.settings[key] = setting
            return setting

    # webhook ledger

    def has_webhook_event(self, event_id: str) -> bool:
        return event_id in self.webhook_events

    def get_webhook_event(self, event_id: str) -> WebhookEventRecord:
        event = self.webhook_events.get(event_id)
        if not event:
            raise StoreNotFoundError(f"webhook event not found: {event_id}")
        return event

    def record_webhook_event(
        self, *, event_id: str, source: str, event_type: str, payload: Any
    ) -> tuple[WebhookEventRecord, bool]:
        """Record a delivery in the ledger. Returns the event and whether to apply it.

        A delivery counts as a duplicate only once an earlier one was applied or
        rejected; an event left unprocessed by a failed attempt is applied again.
        """
        with self._lock:
            existing = self.webhook_events.get(event_id)
            if existing:
                return existing, _needs_apply(existing)
            event = WebhookEventRecord(
                id=new_id("whk"),
                event_id=event_id,
                source=source,
                event_type=event_type,
                payload=payload,
                created_at_utc=utc_now(),
            )
            if self.persistence and not self.persistence.insert_webhook_event(event):
                # another process recorded it first
                stored = next(
                    item
                    for item in self.persistence.load_all("webhook_events")
                    if item.event_id == event_id
                )
                self.webhook_events[event_id] = stored
                return stored, _needs_apply(stored)
            self.webhook_events[event_id] = event
            return event, True

    def mark_webhook_processed(
        self, event_id: str, *, error: Optional[str] = None
    ) -> WebhookEventRecord:
        with self._lock:
            event = self.get_webhook_event(event_id)
            updated = event.model_copy(
                update={
                    "processed": error is None,
                    "processed_at": utc_now(),
                    "error_message": error,
                }
            )
            self._write("webhook_events", updated)
            self.webhook_events[event_id] = updated
            return updated

    # dashboard

    def dashboard_stats(self, *, now: Optional[datetime] = None) -> dict[str, int]:
        current = now or utc_now()
        start_of_day = datetime.combine(current.date(), time.min)
        candidates = list(self.candidates.values())
        calls = list(self.calls.values())
        successful = sum(1 for call in calls if call.outcome == CallOutcome.interested)
        total = len(calls)
        # integer round-half-up of successful / total * 100
        success_rate = (successful * 200 + total) // (2 * total) if total else 0
        return {
            "total_applications": len(candidates),
            "interviews_scheduled": sum(
                1 for candidate in candidates if candidate.status == CandidateStatus.interview
            ),
            "placements": sum(
                1 for candidate in candidates if candidate.status == CandidateStatus.hired
            ),
            "active_campaigns": sum(
                1
                for campaign in self.campaigns.values()
                if campaign.status == CampaignStatus.running
            ),
            "calls_today": sum(1 for call in calls if call.created_at_utc >= start_of_day),
            "success_rate": success_rate,
        }

    # internals

    def _new_enrollment(
        self, campaign_id: str, candidate_id: str, now: datetime
    ) -> CampaignCandidateRecord:
        return CampaignCandidateRecord(
            id=new_id("enr"),
            campaign_id=campaign_id,
            candidate_id=candidate_id,
            created_at_utc=now,
        )

    def _add_audit_event(
        self,
        *,
        campaign_id: str,
        from_status: Optional[CampaignStatus],
        to_status: CampaignStatus,
        reason: str,
    ) -> None:
        event = CampaignAuditEventRecord(
            id=new_id("aud"),
            campaign_id=campaign_id,
            from_status=from_status,
            to_status=to_status,
            reason=reason,
            created_at_utc=utc_now(),
        )
        self._write("campaign_audit_events", event)
        self.campaign_audit_events.append(event)

    def _write(self, kind: str, record: BaseModel) -> None:
        if self.persistence:
            self.persistence.upsert(kind, record)

    def _write_many(self, items: list[tuple[str, BaseModel]]) -> None:
        if self.persistence:
            self.persistence.upsert_many(items)

    def _remove(self, kind: str, key: str) -> None:
        if self.persistence:
            self.persistence.delete(kind, key)

    def _hydrate(self) -> None:
        assert self.persistence is not None
        self.vacancies = {
            record.id: record for record in self.persistence.load_all("vacancies")
        }
        self.candidates = {
            record.id: record for record in self.persistence.load_all("candidates")
        }
        self.campaigns = {
            record.id: record for record in self.persistence.load_all("campaigns")
        }
        self.enrollments = {
            record.id: record for record in self.persistence.load_all("campaign_candidates")
        }
        self.calls = {record.id: record for record in self.persistence.load_all("calls")}
        self.dnc_entries = {
            record.id: record for record in self.persistence.load_all("dnc_entries")
        }
        self.settings = {
            record.key: record for record in self.persistence.load_all("settings")
        }
        self.webhook_events = {
            record.event_id: record for record in self.persistence.load_all("webhook_events")
        }
        self.campaign_audit_events = sorted(
            self.persistence.load_all("campaign_audit_events"),
            key=lambda item: item.created_at_utc,
        )
