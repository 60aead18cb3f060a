from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor

from backend.app.models import (
    CampaignCreateRequest,
    CandidateCreateRequest,
    ConsentStatus,
    utc_now,
)
from backend.app.store import InMemoryStore


def test_candidate_write_and_read_concurrent() -> None:
    store = InMemoryStore()
    read_errors: list[Exception] = []

    def writer(index: int) -> None:
        request = CandidateCreateRequest(
            name=f"Candidate {index}",
            email=f"candidate{index}@example.com",
            phone=f"+1415{index:07d}",
            consent_status=ConsentStatus.granted,
        )
        store.create_candidate(request)

    def reader() -> None:
        for _ in range(300):
            try:
                store.list_candidates()
            except Exception as exc:  # pragma: no cover - regression trap
                read_errors.append(exc)

    with ThreadPoolExecutor(max_workers=10) as executor:
        futures = [executor.submit(writer, i) for i in range(300)]
        futures.extend(executor.submit(reader) for _ in range(4))
        for future in futures:
            future.result()

    assert not read_errors
    assert len(store.list_candidates()) == 300


def test_concurrent_finalize_contact_loses_no_updates() -> None:
    store = InMemoryStore()
    campaign = store.create_campaign(
        CampaignCreateRequest(name="Busy line", script_template="Hi", total_candidates=200)
    )

    def finish(index: int) -> bool:
        _, counted = store.finalize_contact(campaign_id=campaign.id, successful=index % 4 == 0)
        return counted

    with ThreadPoolExecutor(max_workers=16) as executor:
        results = list(executor.map(finish, range(200)))

    assert all(results)
    final = store.get_campaign(campaign.id)
    assert final.completed_calls == 200
    assert final.successful_calls == 50
    assert final.failed_calls == 150


def test_finalize_contact_never_passes_total() -> None:
    store = InMemoryStore()
    campaign = store.create_campaign(
        CampaignCreateRequest(name="Small", script_template="Hi", total_candidates=5)
    )

    with ThreadPoolExecutor(max_workers=8) as executor:
        results = list(
            executor.map(
                lambda _: store.finalize_contact(campaign_id=campaign.id, successful=True)[1],
                range(40),
            )
        )

    assert results.count(True) == 5
    final = store.get_campaign(campaign.id)
    assert final.completed_calls == 5
    assert final.successful_calls + final.failed_calls == final.completed_calls


def test_claim_due_enrollments_hands_out_each_candidate_once() -> None:
    store = InMemoryStore()
    candidate_ids = [
        store.create_candidate(
            CandidateCreateRequest(
                name=f"Candidate {index}",
                email=f"claim{index}@example.com",
                phone=f"+1415{index:07d}",
            )
        ).id
        for index in range(30)
    ]
    campaign = store.create_campaign(
        CampaignCreateRequest(name="Claims", script_template="Hi", candidate_ids=candidate_ids)
    )

    now = utc_now()
    with ThreadPoolExecutor(max_workers=6) as executor:
        batches = list(
            executor.map(
                lambda _: store.claim_due_enrollments(campaign.id, now=now, limit=4),
                range(12),
            )
        )

    claimed = [enrollment.candidate_id for batch in batches for enrollment in batch]
    assert len(claimed) == len(set(claimed)) == 30
    assert all(enrollment.attempts == 1 for batch in batches for enrollment in batch)
