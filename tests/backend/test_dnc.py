from __future__ import annotations

from backend.app.models import CandidateRecord, ConsentStatus, DncCreateRequest, utc_now
from backend.app.services.eligibility import eligible_candidates
from backend.app.store import InMemoryStore


def _candidate(candidate_id: str, *, consent: ConsentStatus, is_dnc: bool = False) -> CandidateRecord:
    now = utc_now()
    return CandidateRecord(
        id=candidate_id,
        name=f"Candidate {candidate_id}",
        email=f"{candidate_id}@example.com",
        phone="+14155550000",
        consent_status=consent,
        is_dnc=is_dnc,
        created_at_utc=now,
        updated_at_utc=now,
    )


def test_dnc_add_check_and_remove(client) -> None:
    created = client.post(
        "/api/dnc",
        json={"phone": "+14155551234", "reason": "requested", "source": "email"},
    )
    assert created.status_code == 201
    assert created.json()["addedBy"] == "dev-local"

    check = client.get("/api/dnc/check/+14155551234")
    assert check.status_code == 200
    assert check.json() == {"phone": "+14155551234", "isDnc": True}
    assert client.get("/api/dnc/check/+14155559999").json()["isDnc"] is False

    duplicate = client.post("/api/dnc", json={"phone": "+14155551234"})
    assert duplicate.status_code == 409

    assert client.delete("/api/dnc/+14155551234").status_code == 204
    assert client.get("/api/dnc/check/+14155551234").json()["isDnc"] is False


def test_dnc_remove_by_entry_id(client) -> None:
    entry = client.post("/api/dnc", json={"phone": "+14155557777"}).json()
    assert [item["id"] for item in client.get("/api/dnc").json()] == [entry["id"]]
    assert client.delete(f"/api/dnc/{entry['id']}").status_code == 204
    assert client.get("/api/dnc").json() == []
    assert client.delete(f"/api/dnc/{entry['id']}").status_code == 204


def test_dnc_check_is_exact_match(client) -> None:
    client.post("/api/dnc", json={"phone": "+14155551234"})
    assert client.get("/api/dnc/check/14155551234").json()["isDnc"] is False


def test_eligible_candidates_keeps_consented_non_dnc_in_order() -> None:
    pool = [
        _candidate("a", consent=ConsentStatus.granted),
        _candidate("b", consent=ConsentStatus.pending),
        _candidate("c", consent=ConsentStatus.granted, is_dnc=True),
        _candidate("d", consent=ConsentStatus.revoked),
        _candidate("e", consent=ConsentStatus.granted),
    ]
    assert [candidate.id for candidate in eligible_candidates(pool)] == ["a", "e"]
    assert eligible_candidates([]) == []


def test_eligible_candidates_checks_dnc_list_when_given_store() -> None:
    store = InMemoryStore()
    listed = _candidate("a", consent=ConsentStatus.granted).model_copy(update={"phone": "+14155551234"})
    clear = _candidate("b", consent=ConsentStatus.granted)
    store.add_dnc(DncCreateRequest(phone="+14155551234"))

    assert [candidate.id for candidate in eligible_candidates([listed, clear])] == ["a", "b"]
    assert [candidate.id for candidate in eligible_candidates([listed, clear], store=store)] == ["b"]


def test_manual_call_requires_contactable_candidate(client, make_candidate) -> None:
    pending = make_candidate(consentStatus="pending")
    rejected = client.post("/api/calls", json={"candidateId": pending["id"]})
    assert rejected.status_code == 409

    listed = make_candidate()
    client.post("/api/dnc", json={"phone": listed["phone"]})
    assert client.post("/api/calls", json={"candidateId": listed["id"]}).status_code == 409

    allowed = make_candidate()
    created = client.post(
        "/api/calls",
        json={"candidateId": allowed["id"], "providerCallId": "manual-1", "duration": 42},
    )
    assert created.status_code == 201
    assert created.json()["candidateId"] == allowed["id"]
    assert created.json()["duration"] == 42
    assert created.json()["crmSynced"] is False

    assert client.post("/api/calls", json={"candidateId": "cand_missing"}).status_code == 404


def test_opt_out_outcome_adds_phone_to_dnc(client, make_candidate, make_campaign) -> None:
    candidate = make_candidate()
    campaign = make_campaign(candidateIds=[candidate["id"]])
    call = client.post(
        "/api/calls",
        json={"candidateId": candidate["id"], "campaignId": campaign["id"]},
    ).json()

    updated = client.patch(
        f"/api/calls/{call['id']}",
        json={"outcome": "opt_out", "summary": "Asked not to be called again"},
    )
    assert updated.status_code == 200
    assert updated.json()["outcome"] == "opt_out"

    assert client.get(f"/api/dnc/check/{candidate['phone']}").json()["isDnc"] is True
    refreshed = client.get(f"/api/candidates/{candidate['id']}").json()
    assert refreshed["isDnc"] is True
    assert refreshed["dncTimestamp"] is not None

    state = client.get(f"/api/campaigns/{campaign['id']}").json()
    assert state["completedCalls"] == 1
    assert state["failedCalls"] == 1

    again = client.post("/api/calls", json={"candidateId": candidate["id"]})
    assert again.status_code == 409
