from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from triage.core.errors import StorageUnavailable

_ACM = {
    "resourceType": "AWS::CertificateManager::Certificate",
    "logicalId": "SiteCert",
    "statusReason": "DNS validation is pending",
    "timestamp": "2026-01-02T03:00:00Z",
}


@pytest.fixture
def client(engine):  # type: ignore[no-untyped-def]
    import triage.api.app as api

    api.set_engine(engine)
    try:
        yield TestClient(api.app)
    finally:
        api.set_engine(None)


def test_healthz(client) -> None:  # type: ignore[no-untyped-def]
    r = client.get("/healthz")
    assert r.status_code == 200
    assert r.json() == {"ok": True}


def test_create_and_list_verdicts(client) -> None:  # type: ignore[no-untyped-def]
    r = client.post("/executions/exec-1/verdicts", json={"signals": [_ACM]})
    assert r.status_code == 201
    body = r.json()
    assert body["error_class"] == "ACM_DNS_VALIDATION_PENDING"
    assert body["confidence_score"] == 90
    assert body["proposed_action"] == "WAIT_AND_RETRY"

    r = client.get("/executions/exec-1/verdicts")
    assert r.status_code == 200
    assert [v["id"] for v in r.json()] == [body["id"]]

    r = client.get(f"/verdicts/{body['id']}")
    assert r.status_code == 200
    assert r.json()["policy_version"] == "v1.0.0"

    r = client.get(f"/verdicts/{body['id']}/policy")
    assert r.status_code == 200
    assert r.json()["policy_definition"]["rule_set_version"] == "v1.0.0"

    fp = body["fingerprint_id"]
    r = client.get(f"/fingerprints/{fp}/stats")
    assert r.status_code == 200
    assert r.json()["total_occurrences"] == 1

    r = client.get(f"/fingerprints/{fp}/events", params={"limit": 5})
    assert r.status_code == 200
    assert len(r.json()) == 1


def test_unknown_verdict_is_404(client) -> None:  # type: ignore[no-untyped-def]
    assert client.get("/verdicts/nope").status_code == 404
    assert client.get("/verdicts/nope/policy").status_code == 404


def test_invalid_signal_is_422(client) -> None:  # type: ignore[no-untyped-def]
    r = client.post("/executions/exec-1/verdicts", json={"signals": [{"statusReason": "no resource type"}]})
    assert r.status_code == 422


def test_consistency_and_kpis(client) -> None:  # type: ignore[no-untyped-def]
    client.post("/executions/exec-1/verdicts", json={"signals": [_ACM]})
    client.post("/executions/exec-2/verdicts", json={"signals": [_ACM]})

    r = client.get("/consistency")
    assert r.status_code == 200
    assert r.json()["consistency_score_percent"] == 100
    assert r.json()["total_groups"] == 1

    r = client.get("/consistency", params={"since": "2099-01-01T00:00:00Z"})
    assert r.json()["total_groups"] == 0

    r = client.get("/kpis")
    assert r.status_code == 200
    body = r.json()
    assert body["total_verdicts"] == 2
    assert body["top_error_classes"][0]["error_class"] == "ACM_DNS_VALIDATION_PENDING"


def test_storage_unavailable_is_503(client, store, monkeypatch: pytest.MonkeyPatch) -> None:  # type: ignore[no-untyped-def]
    def _down(*_a, **_kw):  # type: ignore[no-untyped-def]
        raise StorageUnavailable("db down")

    monkeypatch.setattr(store, "get_snapshot_id_for_execution", _down)
    r = client.post("/executions/exec-1/verdicts", json={"signals": [_ACM]})
    assert r.status_code == 503


def test_engine_built_from_env_uses_memory_store_without_postgres() -> None:
    import triage.api.app as api
    from triage.storage.local_store import MemoryStore

    api.set_engine(None)
    try:
        assert isinstance(api.get_engine().store, MemoryStore)
    finally:
        api.set_engine(None)


def test_statistics_audit_log_and_latest_snapshot(client) -> None:  # type: ignore[no-untyped-def]
    r = client.get("/policy-snapshots/latest")
    assert r.status_code == 404

    first = client.post("/executions/exec-1/verdicts", json={"signals": [_ACM]}).json()
    second = client.post("/executions/exec-2/verdicts", json={"signals": [_ACM]}).json()

    r = client.get("/statistics")
    assert r.status_code == 200
    stats = r.json()
    assert stats[0]["error_class"] == "ACM_DNS_VALIDATION_PENDING"
    assert stats[0]["total_count"] == 2
    assert stats[0]["affected_executions"] == 2

    r = client.get(f"/verdicts/{first['id']}/audit-log")
    assert r.status_code == 200
    assert [e["event_type"] for e in r.json()] == ["VERDICT_CREATED"]

    r = client.get("/policy-snapshots/latest")
    assert r.status_code == 200
    assert r.json()["id"] == second["policy_snapshot_id"]


def test_fingerprint_verdicts_route(client) -> None:  # type: ignore[no-untyped-def]
    ids = [client.post(f"/executions/exec-{i}/verdicts", json={"signals": [_ACM]}).json() for i in range(3)]
    fp = ids[0]["fingerprint_id"]

    r = client.get(f"/fingerprints/{fp}/verdicts", params={"limit": 2})
    assert r.status_code == 200
    assert [v["id"] for v in r.json()] == [ids[2]["id"], ids[1]["id"]]

    assert client.get(f"/fingerprints/{fp}/verdicts", params={"limit": 0}).status_code == 422
