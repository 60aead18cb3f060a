from __future__ import annotations

from typing import Iterable, Optional

from backend.app.models import CandidateRecord, ConsentStatus
from backend.app.store import InMemoryStore


def is_eligible(candidate: CandidateRecord) -> bool:
    return not candidate.is_dnc and candidate.consent_status == ConsentStatus.granted


def can_contact(store: InMemoryStore, candidate: CandidateRecord) -> bool:
    """Candidate passes the consent/DNC flags and its phone is not on the DNC list."""
    return is_eligible(candidate) and not store.is_on_dnc(candidate.phone)


def eligible_candidates(
    candidates: Iterable[CandidateRecord], *, store: Optional[InMemoryStore] = None
) -> list[CandidateRecord]:
    """Keep contactable candidates in their original order.

    Without a store only the candidate's own flags are checked.
    """
    if store is None:
        return [candidate for candidate in candidates if is_eligible(candidate)]
    return [candidate for candidate in candidates if can_contact(store, candidate)]
