from __future__ import annotations

import logging
import random
import re
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime
from typing import Optional

from backend.app.models import (
    CallOutcome,
    CallUpdateRequest,
    CampaignRecord,
    CampaignStatus,
    CandidateRecord,
    DispatchResult,
    EnrollmentStatus,
    LaunchResult,
    utc_now,
)
from backend.app.observability import MetricsRegistry
from backend.app.services.eligibility import can_contact, eligible_candidates
from backend.app.services.lifecycle import (
    maybe_complete_campaign,
    record_call_outcome,
    skip_enrollment,
    transition_campaign,
)
from backend.app.services.scheduling import is_within_call_window
from backend.app.services.voice_provider import (
    OutboundCallRequest,
    OutboundCallResult,
    VoiceProviderError,
)
from backend.app.services.workflow import LAUNCHABLE_STATUSES
from backend.app.settings import Settings
from backend.app.store import InMemoryStore, StoreNotFoundError

logger = logging.getLogger("recruit_caller.executor")

MOCK_MODE_SETTING = "mock_mode"
MOCK_OUTCOMES = (CallOutcome.interested, CallOutcome.not_interested, CallOutcome.no_answer)
MOCK_SENTIMENTS = {
    CallOutcome.interested: "positive",
    CallOutcome.not_interested: "negative",
}
MOCK_SUMMARIES = {
    CallOutcome.interested: (
        "Candidate expressed strong interest in the position and is open to next steps."
    ),
    CallOutcome.not_interested: "Candidate is not actively looking for a new role at this time.",
    CallOutcome.no_answer: "Call went to voicemail - candidate did not answer.",
}
MOCK_TRANSCRIPTS = {
    CallOutcome.interested: (
        "Agent: Hello, I'm calling about the {role} role.\n"
        "Candidate: Hi, yes, I'm interested.\n"
        "Agent: Great! Can you tell me about your experience?\n"
        "Candidate: I've spent the last five years in a similar position.\n"
        "Agent: Perfect, a recruiter will contact you soon."
    ),
    CallOutcome.not_interested: (
        "Agent: Hello, I'm calling about the {role} role.\n"
        "Candidate: Sorry, I'm not looking to change jobs right now.\n"
        "Agent: I understand, thanks for your time."
    ),
    CallOutcome.no_answer: (
        "Agent: Hello, I'm calling about the {role} role.\n"
        "[No response - voicemail recorded]"
    ),
}
VOICE_PROVIDER_MISSING = "voice provider is not configured; enable mock mode for testing"

_PLACEHOLDER = re.compile(r"\{\{\s*([a-zA-Z_][a-zA-Z0-9_]*)\s*\}\}")


class CampaignExecutionError(Exception):
    pass


def render_script(template: str, *, candidate_name: str, vacancy_title: str) -> str:
    values = {"candidate_name": candidate_name, "vacancy_title": vacancy_title}

    def replace(match: re.Match) -> str:
        key = match.group(1)
        return values[key] if key in values else match.group(0)

    return _PLACEHOLDER.sub(replace, template)


def is_mock_mode(store: InMemoryStore) -> bool:
    setting = store.get_setting(MOCK_MODE_SETTING)
    return setting is not None and setting.value is True


class CampaignExecutor:
    """Runs campaigns either as an in-process simulation or against the voice provider."""

    def __init__(
        self,
        *,
        store: InMemoryStore,
        settings: Settings,
        voice_provider=None,
        metrics: Optional[MetricsRegistry] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.voice_provider = voice_provider
        self.metrics = metrics
        self.rng = rng or random.Random()

    def launch(self, campaign_id: str) -> LaunchResult:
        try:
            campaign = self.store.get_campaign(campaign_id)
        except StoreNotFoundError:
            return LaunchResult(success=False, message="Campaign not found")
        if campaign.status not in LAUNCHABLE_STATUSES:
            return LaunchResult(
                success=False,
                message=f"campaign cannot be launched from status {campaign.status.value}",
            )

        mock_mode = is_mock_mode(self.store)
        try:
            if mock_mode:
                return self._launch_mock(campaign)
            return self._launch_live(campaign)
        except CampaignExecutionError as exc:
            logger.warning(
                "campaign_launch_rejected campaign_id=%s mock_mode=%s reason=%s",
                campaign_id,
                mock_mode,
                exc,
            )
            return LaunchResult(success=False, mock_mode=mock_mode, message=str(exc))
        except Exception:
            logger.exception("campaign_launch_failed campaign_id=%s", campaign_id)
            return LaunchResult(
                success=False,
                mock_mode=mock_mode,
                message="campaign execution failed",
            )

    def _start(self, campaign: CampaignRecord, *, now: datetime) -> None:
        if campaign.status == CampaignStatus.draft:
            transition_campaign(
                self.store, campaign.id, CampaignStatus.scheduled, reason="launch", now=now
            )
        transition_campaign(
            self.store, campaign.id, CampaignStatus.running, reason="launch", now=now
        )

    def _vacancy_title(self, campaign: CampaignRecord) -> str:
        if not campaign.vacancy_id:
            return "open"
        try:
            return self.store.get_vacancy(campaign.vacancy_id).title
        except StoreNotFoundError:
            return "open"

    def _campaign_pool(self, campaign: CampaignRecord) -> list[CandidateRecord]:
        enrolled = [
            self.store.candidates[enrollment.candidate_id]
            for enrollment in self.store.list_enrollments(campaign.id)
            if enrollment.candidate_id in self.store.candidates
        ]
        if enrolled:
            return enrolled
        if campaign.vacancy_id:
            candidates = self.store.list_candidates(vacancy_id=campaign.vacancy_id)
        else:
            candidates = []
        return sorted(candidates, key=lambda item: item.created_at_utc)

    def _mock_targets(self, campaign: CampaignRecord) -> list[CandidateRecord]:
        pool = self._campaign_pool(campaign)
        eligible = eligible_candidates(pool, store=self.store)
        if eligible:
            return eligible
        if campaign.vacancy_id:
            pool = self.store.list_candidates(vacancy_id=campaign.vacancy_id)
        else:
            pool = self.store.list_candidates()
        pool = sorted(pool, key=lambda item: item.created_at_utc)
        return eligible_candidates(pool, store=self.store)

    def _launch_mock(self, campaign: CampaignRecord) -> LaunchResult:
        now = utc_now()
        targets = self._mock_targets(campaign)
        role = self._vacancy_title(campaign)
        total = campaign.total_candidates

        calls = []
        for index in range(total):
            outcome = MOCK_OUTCOMES[index % len(MOCK_OUTCOMES)]
            candidate = targets[index % len(targets)] if targets else None
            calls.append(
                self.store.build_call(
                    campaign_id=campaign.id,
                    candidate_id=candidate.id if candidate else None,
                    provider_call_id=f"mock-{campaign.id}-{index}",
                    outcome=outcome,
                    duration=self.rng.randrange(30, 630),
                    confidence=self.rng.randrange(70, 100),
                    sentiment=MOCK_SENTIMENTS.get(outcome, "neutral"),
                    transcript=MOCK_TRANSCRIPTS[outcome].format(role=role),
                    summary=MOCK_SUMMARIES[outcome],
                    counted_in_campaign=True,
                )
            )

        successful = sum(1 for call in calls if call.outcome == CallOutcome.interested)
        with self.store.lock:
            current = self.store.get_campaign(campaign.id)
            if current.status not in LAUNCHABLE_STATUSES:
                raise CampaignExecutionError(
                    f"campaign cannot be launched from status {current.status.value}"
                )
            steps = [
                (CampaignStatus.running, "launch"),
                (CampaignStatus.completed, "mock_execution_finished"),
            ]
            changes = {
                "completed_calls": total,
                "successful_calls": successful,
                "failed_calls": total - successful,
                "started_at": current.started_at or now,
                "completed_at": now,
            }
            if current.status == CampaignStatus.draft:
                steps.insert(0, (CampaignStatus.scheduled, "launch"))
                changes["scheduled_at"] = current.scheduled_at or now
            # calls, counters and the whole status walk land in a single write
            self.store.complete_campaign_run(
                campaign.id, steps=steps, calls=calls, changes=changes
            )
        if self.metrics:
            for call in calls:
                self.metrics.record_call_outcome(call.outcome.value)
        logger.info(
            "campaign_launched campaign_id=%s mode=mock calls=%s interested=%s",
            campaign.id,
            total,
            successful,
        )
        return LaunchResult(
            success=True,
            calls_created=total,
            mock_mode=True,
            message=f"Mock campaign executed: {total} calls created ({successful} interested)",
        )

    def _launch_live(self, campaign: CampaignRecord) -> LaunchResult:
        if self.voice_provider is None:
            raise CampaignExecutionError(VOICE_PROVIDER_MISSING)

        eligible = eligible_candidates(self._campaign_pool(campaign), store=self.store)
        if not eligible:
            raise CampaignExecutionError(
                "no eligible candidates: every candidate lacks consent or is on the do-not-call list"
            )

        now = utc_now()
        eligible_ids = {candidate.id for candidate in eligible}
        with self.store.lock:
            for enrollment in self.store.list_enrollments(campaign.id):
                if enrollment.candidate_id not in eligible_ids:
                    self.store.save_enrollment(
                        enrollment.model_copy(update={"status": EnrollmentStatus.skipped})
                    )
            self.store.enroll_candidates(campaign.id, [candidate.id for candidate in eligible])
            self.store.update_campaign(campaign.id, {"total_candidates": len(eligible)})
            self._start(campaign, now=now)

        result = self.dispatch(campaign.id, now=now)
        logger.info(
            "campaign_launched campaign_id=%s mode=live eligible=%s dispatched=%s reason=%s",
            campaign.id,
            len(eligible),
            result.dispatched,
            result.reason,
        )
        return LaunchResult(
            success=True,
            calls_created=result.dispatched,
            mock_mode=False,
            message=(
                f"Campaign running: {len(eligible)} eligible candidates, "
                f"{result.dispatched} calls placed"
            ),
        )

    def _in_flight(self, campaign_id: str) -> int:
        return sum(
            1
            for enrollment in self.store.list_enrollments(campaign_id)
            if enrollment.status == EnrollmentStatus.dialing
        )

    def dispatch(self, campaign_id: str, *, now: Optional[datetime] = None) -> DispatchResult:
        """Place the next batch of calls for a running campaign.

        Raises StoreNotFoundError for an unknown campaign; every other refusal is
        reported through ``DispatchResult.reason``.
        """
        current = now or utc_now()
        campaign = self.store.get_campaign(campaign_id)
        if campaign.status != CampaignStatus.running:
            return DispatchResult(
                campaign_id=campaign_id,
                in_flight=self._in_flight(campaign_id),
                reason=f"campaign_not_running_{campaign.status.value}",
            )
        if self.voice_provider is None:
            return DispatchResult(campaign_id=campaign_id, reason="voice_provider_not_configured")

        allowed, window_reason = is_within_call_window(
            campaign, now=current, timezone_name=self.settings.call_window_timezone
        )
        if not allowed:
            return DispatchResult(
                campaign_id=campaign_id,
                in_flight=self._in_flight(campaign_id),
                reason=window_reason,
            )

        with self.store.lock:
            capacity = campaign.max_concurrent_calls - self._in_flight(campaign_id)
            claimed = self.store.claim_due_enrollments(campaign_id, now=current, limit=capacity)
        if capacity <= 0:
            return DispatchResult(
                campaign_id=campaign_id,
                in_flight=self._in_flight(campaign_id),
                reason="at_capacity",
            )
        if not claimed:
            maybe_complete_campaign(self.store, campaign_id, now=current)
            return DispatchResult(
                campaign_id=campaign_id,
                in_flight=self._in_flight(campaign_id),
                reason="nothing_due",
            )

        role = self._vacancy_title(campaign)
        skipped = 0
        batch: list[tuple[CandidateRecord, OutboundCallRequest]] = []
        for enrollment in claimed:
            candidate = self.store.candidates.get(enrollment.candidate_id)
            if candidate is None or not can_contact(self.store, candidate):
                skip_enrollment(self.store, enrollment, now=current)
                skipped += 1
                continue
            batch.append(
                (
                    candidate,
                    OutboundCallRequest(
                        phone=candidate.phone,
                        candidate_name=candidate.name,
                        script=render_script(
                            campaign.script_template,
                            candidate_name=candidate.name,
                            vacancy_title=role,
                        ),
                        campaign_id=campaign_id,
                        candidate_id=candidate.id,
                    ),
                )
            )

        dispatched = 0
        failed = 0
        if batch:
            with ThreadPoolExecutor(max_workers=len(batch)) as pool:
                futures = {
                    pool.submit(self.voice_provider.place_call, outbound): candidate
                    for candidate, outbound in batch
                }
                for future in as_completed(futures):
                    candidate = futures[future]
                    try:
                        placed: OutboundCallResult = future.result()
                    except VoiceProviderError as exc:
                        failed += 1
                        self._record_provider_failure(campaign_id, candidate, str(exc), current)
                        continue
                    except Exception as exc:
                        # every claimed slot must be released, whatever the provider raised
                        logger.exception(
                            "call_placement_crashed campaign_id=%s candidate_id=%s",
                            campaign_id,
                            candidate.id,
                        )
                        failed += 1
                        self._record_provider_failure(
                            campaign_id,
                            candidate,
                            f"voice provider call failed: {type(exc).__name__}",
                            current,
                        )
                        continue
                    self.store.save_call(
                        self.store.build_call(
                            campaign_id=campaign_id,
                            candidate_id=candidate.id,
                            provider_call_id=placed.provider_call_id,
                        )
                    )
                    dispatched += 1
                    if self.metrics:
                        self.metrics.record_call_placed()

        maybe_complete_campaign(self.store, campaign_id, now=current)
        result = DispatchResult(
            campaign_id=campaign_id,
            dispatched=dispatched,
            skipped=skipped,
            failed=failed,
            in_flight=self._in_flight(campaign_id),
            reason="dispatched",
        )
        logger.info(
            "campaign_dispatch campaign_id=%s dispatched=%s skipped=%s failed=%s in_flight=%s",
            campaign_id,
            result.dispatched,
            result.skipped,
            result.failed,
            result.in_flight,
        )
        return result

    def _record_provider_failure(
        self, campaign_id: str, candidate: CandidateRecord, error: str, now: datetime
    ) -> None:
        logger.warning(
            "call_placement_failed campaign_id=%s candidate_id=%s error=%s",
            campaign_id,
            candidate.id,
            error,
        )
        call = self.store.save_call(
            self.store.build_call(campaign_id=campaign_id, candidate_id=candidate.id)
        )
        record_call_outcome(
            self.store,
            call.id,
            CallUpdateRequest(outcome=CallOutcome.error, error_message=error),
            now=now,
            metrics=self.metrics,
        )
