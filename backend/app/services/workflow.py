from __future__ import annotations

from backend.app.models import CampaignStatus

ALLOWED_TRANSITIONS = {
    CampaignStatus.draft: {CampaignStatus.scheduled, CampaignStatus.cancelled},
    CampaignStatus.scheduled: {CampaignStatus.running, CampaignStatus.cancelled},
    CampaignStatus.running: {
        CampaignStatus.paused,
        CampaignStatus.completed,
        CampaignStatus.cancelled,
    },
    CampaignStatus.paused: {CampaignStatus.running, CampaignStatus.cancelled},
    CampaignStatus.completed: set(),
    CampaignStatus.cancelled: set(),
}

TERMINAL_STATUSES = {
    status for status, targets in ALLOWED_TRANSITIONS.items() if not targets
}

LAUNCHABLE_STATUSES = {CampaignStatus.draft, CampaignStatus.scheduled}


def can_transition(from_status: CampaignStatus, to_status: CampaignStatus) -> bool:
    return from_status == to_status or to_status in ALLOWED_TRANSITIONS[from_status]
