from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Optional

from backend.app.models import (
    OPEN_ENROLLMENT_STATUSES,
    CallOutcome,
    CallRecord,
    CallUpdateRequest,
    CampaignCandidateRecord,
    CampaignRecord,
    CampaignStatus,
    DncCreateRequest,
    EnrollmentStatus,
    utc_now,
)
from backend.app.observability import MetricsRegistry
from backend.app.services.workflow import ALLOWED_TRANSITIONS, TERMINAL_STATUSES
from backend.app.store import InMemoryStore, StoreNotFoundError

logger = logging.getLogger("recruit_caller.lifecycle")

RETRYABLE_OUTCOMES = {CallOutcome.no_answer, CallOutcome.busy}


class CampaignTransitionError(Exception):
    pass


def transition_campaign(
    store: InMemoryStore,
    campaign_id: str,
    to_status: CampaignStatus,
    *,
    reason: str,
    now: Optional[datetime] = None,
) -> CampaignRecord:
    with store.lock:
        campaign = store.get_campaign(campaign_id)
        from_status = campaign.status
        if from_status == to_status:
            return campaign
        if to_status not in ALLOWED_TRANSITIONS[from_status]:
            raise CampaignTransitionError(
                f"illegal campaign transition: {from_status.value} -> {to_status.value}"
            )

        current = now or utc_now()
        changes: dict = {}
        if to_status == CampaignStatus.scheduled and campaign.scheduled_at is None:
            changes["scheduled_at"] = current
        if to_status == CampaignStatus.running and campaign.started_at is None:
            changes["started_at"] = current
        if to_status in TERMINAL_STATUSES:
            changes["completed_at"] = current

        updated = store.set_campaign_status(
            campaign_id, to_status, reason=reason, changes=changes
        )
    logger.info(
        "campaign_transition campaign_id=%s from=%s to=%s reason=%s",
        campaign_id,
        from_status.value,
        to_status.value,
        reason,
    )
    return updated


def maybe_complete_campaign(
    store: InMemoryStore, campaign_id: str, *, now: Optional[datetime] = None
) -> CampaignRecord:
    """Move a running campaign to completed once no contact is left open."""
    with store.lock:
        campaign = store.get_campaign(campaign_id)
        if campaign.status != CampaignStatus.running:
            return campaign
        enrollments = store.list_enrollments(campaign_id)
        if enrollments:
            finished = all(
                enrollment.status not in OPEN_ENROLLMENT_STATUSES for enrollment in enrollments
            )
        else:
            finished = 0 < campaign.total_candidates <= campaign.completed_calls
        if not finished:
            return campaign
        return transition_campaign(
            store,
            campaign_id,
            CampaignStatus.completed,
            reason="all_contacts_finished",
            now=now,
        )


def skip_enrollment(
    store: InMemoryStore,
    enrollment: CampaignCandidateRecord,
    *,
    now: Optional[datetime] = None,
) -> CampaignRecord:
    """Close an enrollment whose candidate failed the contact gate; counts as failed."""
    skipped = enrollment.model_copy(
        update={"status": EnrollmentStatus.skipped, "next_attempt_at": None}
    )
    campaign, _ = store.finalize_contact(
        campaign_id=enrollment.campaign_id,
        successful=False,
        enrollment=skipped,
    )
    logger.info(
        "enrollment_skipped campaign_id=%s candidate_id=%s",
        enrollment.campaign_id,
        enrollment.candidate_id,
    )
    return campaign


def _record_opt_out(store: InMemoryStore, call: CallRecord) -> None:
    if not call.candidate_id:
        return
    try:
        candidate = store.get_candidate(call.candidate_id)
    except StoreNotFoundError:
        return
    if not store.is_on_dnc(candidate.phone):
        store.add_dnc(
            DncCreateRequest(
                phone=candidate.phone,
                reason="candidate opted out during call",
                source="call_opt_out",
            )
        )
    if not candidate.is_dnc:
        store.mark_candidate_dnc(candidate.id)
    logger.info("candidate_opted_out candidate_id=%s call_id=%s", candidate.id, call.id)


def record_call_outcome(
    store: InMemoryStore,
    call_id: str,
    update: CallUpdateRequest,
    *,
    now: Optional[datetime] = None,
    metrics: Optional[MetricsRegistry] = None,
) -> CallRecord:
    """Apply outcome fields to a call and settle its campaign contact.

    A call is counted against its campaign at most once. Retryable outcomes with
    attempts left reschedule the enrollment instead of counting.
    """
    current = now or utc_now()
    with store.lock:
        call = store.get_call(call_id)
        changes = update.model_dump(exclude_unset=True)
        updated_call = call.model_copy(update={**changes, "updated_at_utc": current})
        outcome = updated_call.outcome

        if outcome is None or "outcome" not in changes:
            return store.save_call(updated_call)
        if metrics:
            metrics.record_call_outcome(outcome.value)
        if not call.campaign_id or call.counted_in_campaign:
            return store.save_call(updated_call)

        try:
            campaign = store.get_campaign(call.campaign_id)
        except StoreNotFoundError:
            return store.save_call(updated_call)

        enrollment = (
            store.get_enrollment(campaign.id, call.candidate_id) if call.candidate_id else None
        )
        if (
            outcome in RETRYABLE_OUTCOMES
            and enrollment is not None
            and enrollment.attempts <= campaign.retry_limit
        ):
            retry = enrollment.model_copy(
                update={
                    "status": EnrollmentStatus.retry_scheduled,
                    "next_attempt_at": current + timedelta(minutes=campaign.retry_delay_minutes),
                }
            )
            store.save_call_with_enrollment(updated_call, retry)
            logger.info(
                "call_retry_scheduled call_id=%s campaign_id=%s attempts=%s next_attempt_at=%s",
                call_id,
                campaign.id,
                retry.attempts,
                retry.next_attempt_at.isoformat(),
            )
            return updated_call

        successful = outcome == CallOutcome.interested
        if enrollment is not None:
            enrollment = enrollment.model_copy(
                update={
                    "status": (
                        EnrollmentStatus.failed
                        if outcome == CallOutcome.error
                        else EnrollmentStatus.completed
                    ),
                    "next_attempt_at": None,
                }
            )
        campaign, counted = store.finalize_contact(
            campaign_id=campaign.id,
            successful=successful,
            call=updated_call,
            enrollment=enrollment,
        )
        if not counted:
            logger.warning(
                "campaign_counter_guard campaign_id=%s call_id=%s completed=%s total=%s",
                campaign.id,
                call_id,
                campaign.completed_calls,
                campaign.total_candidates,
            )
        if outcome == CallOutcome.opt_out:
            _record_opt_out(store, updated_call)
        maybe_complete_campaign(store, campaign.id, now=current)
        return store.get_call(call_id)
