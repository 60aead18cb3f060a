from __future__ import annotations

from datetime import timedelta

from backend.app.models import CallOutcome, utc_now
from backend.app.store import InMemoryStore


def test_empty_dashboard_reports_zero_success_rate(client) -> None:
    response = client.get("/api/dashboard/stats")
    assert response.status_code == 200
    assert response.json() == {
        "totalApplications": 0,
        "interviewsScheduled": 0,
        "placements": 0,
        "activeCampaigns": 0,
        "callsToday": 0,
        "successRate": 0,
    }


def test_dashboard_after_mock_launch(client, make_candidate, make_campaign) -> None:
    candidates = [make_candidate() for _ in range(3)]
    client.post("/api/settings/mock-mode", json={"enabled": True})
    campaign = make_campaign(candidateIds=[candidate["id"] for candidate in candidates])
    assert client.post(f"/api/campaigns/{campaign['id']}/launch").json()["success"] is True

    stats = client.get("/api/dashboard/stats").json()
    assert stats["totalApplications"] == 3
    assert stats["callsToday"] == 3
    assert stats["successRate"] == 33
    assert stats["activeCampaigns"] == 0


def test_dashboard_counts_pipeline_stages(client, make_candidate, make_campaign) -> None:
    interviewing = make_candidate()
    hired = make_candidate()
    make_candidate()
    client.patch(f"/api/candidates/{interviewing['id']}", json={"status": "interview"})
    client.patch(f"/api/candidates/{hired['id']}", json={"status": "hired"})
    campaign = make_campaign()
    client.patch(f"/api/campaigns/{campaign['id']}", json={"status": "scheduled"})
    client.patch(f"/api/campaigns/{campaign['id']}", json={"status": "running"})

    stats = client.get("/api/dashboard/stats").json()
    assert stats["interviewsScheduled"] == 1
    assert stats["placements"] == 1
    assert stats["activeCampaigns"] == 1


def test_success_rate_rounds_half_up_and_calls_today_starts_at_midnight() -> None:
    store = InMemoryStore()
    now = utc_now()
    outcomes = [CallOutcome.interested] + [CallOutcome.no_answer] * 7
    store.save_calls([store.build_call(outcome=outcome) for outcome in outcomes])
    older = store.build_call(outcome=CallOutcome.busy)
    store.save_call(older.model_copy(update={"created_at_utc": now - timedelta(days=2)}))

    stats = store.dashboard_stats(now=now)
    # 1 of 9 interested is 11.1%
    assert stats["success_rate"] == 11
    assert stats["calls_today"] == 8

    store.save_calls([store.build_call(outcome=CallOutcome.interested) for _ in range(3)])
    # 4 of 12 is 33.3%
    assert store.dashboard_stats(now=now)["success_rate"] == 33

    half = InMemoryStore()
    half.save_calls(
        [half.build_call(outcome=CallOutcome.interested)]
        + [half.build_call(outcome=CallOutcome.voicemail) for _ in range(7)]
    )
    # 12.5% rounds to 13
    assert half.dashboard_stats()["success_rate"] == 13
