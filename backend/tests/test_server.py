"""
API tests for the audit service, run in-process against an in-memory store.
"""
import pytest
from fastapi.testclient import TestClient

from server import app, get_store

M = 'demo-merchant'
GAP_SUBSCRIBER = f"{M}-7003"
CLEAN_SUBSCRIBER = f"{M}-7000"


@pytest.fixture
def client(memory_store):
    app.dependency_overrides[get_store] = lambda: memory_store
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def seeded(client):
    response = client.post("/api/synthetic", params={"merchant_id": M, "count": 37})
    assert response.status_code == 200
    return client


@pytest.fixture
def completed_run(seeded):
    response = seeded.post(f"/api/merchants/{M}/runs", json={})
    data = response.json()
    assert data["ok"] is True
    return data["run_id"]


class TestHealth:
    def test_root(self, client):
        response = client.get("/api/")
        assert response.status_code == 200
        assert response.json() == {"message": "Sequence Audit API v1.0", "status": "running"}


class TestSynthetic:
    def test_seed_fleet(self, client, memory_store):
        data = client.post("/api/synthetic", params={"merchant_id": M}).json()
        assert data["metadata"]["subscribers"] == 37
        assert data["metadata"]["expected_flagged"] == 7
        assert len(memory_store.subscribers) == 37
        assert len(memory_store.aliases) == 24

    def test_catalog_rescan_keeps_variations(self, seeded, memory_store):
        before = len(memory_store.variations)
        data = seeded.post(f"/api/merchants/{M}/catalog/scan").json()
        assert data["new_variations"] == 0
        assert data["variations"] == before
        assert data["orders_scanned"] > 0


class TestRuns:
    def test_run_completes(self, seeded, completed_run):
        run = seeded.get(f"/api/runs/{completed_run}").json()
        assert run["status"] == "completed"
        assert run["clean_count"] == 30
        assert run["flagged_count"] == 7
        assert run["progress"]["percent"] == 100.0
        assert run["progress"]["needs_review"] == 7

    def test_list_runs(self, seeded, completed_run):
        runs = seeded.get(f"/api/merchants/{M}/runs").json()
        assert [r["run_id"] for r in runs] == [completed_run]

    def test_second_run_has_no_pending_subscribers(self, seeded, completed_run):
        data = seeded.post(f"/api/merchants/{M}/runs", json={}).json()
        assert data == {"error": "No pending subscribers to audit."}

    def test_requires_aliases(self, client, memory_store):
        memory_store.order_history["empty-merchant"] = {"1": []}
        data = client.post("/api/merchants/empty-merchant/runs", json={}).json()
        assert data == {"error": "Please map at least one SKU before starting the audit."}

    def test_requires_order_source(self, client):
        data = client.post("/api/merchants/nowhere/runs", json={}).json()
        assert "error" in data

    def test_invalid_mode(self, seeded):
        data = seeded.post(f"/api/merchants/{M}/runs", json={"mode": "guess"}).json()
        assert "Unknown audit mode" in data["error"]

    def test_charge_count_needs_billing(self, seeded, memory_store):
        data = seeded.post(f"/api/merchants/{M}/runs", json={"mode": "charge_count"}).json()
        assert data == {"error": "Charge count audits need the billing platform configured"}
        assert memory_store.runs == {}

    def test_cancel_finished_run(self, seeded, completed_run):
        assert "error" in seeded.post(f"/api/runs/{completed_run}/cancel").json()

    def test_unknown_run(self, client):
        assert client.get("/api/runs/RUN-missing").json() == {"error": "Run not found"}

    def test_unknown_status_filter(self, client):
        data = client.get(f"/api/merchants/{M}/audit-logs", params={"status": "pending"}).json()
        assert "Unknown status" in data["error"]


class TestReview:
    def flagged_entry(self, client, subscriber_id=GAP_SUBSCRIBER):
        entries = client.get(f"/api/merchants/{M}/audit-logs", params={"status": "flagged"}).json()
        assert len(entries) == 7
        return next(e for e in entries if e["subscriber_id"] == subscriber_id)

    def test_entry_explanation(self, seeded, completed_run):
        entry = self.flagged_entry(seeded)
        detail = seeded.get(f"/api/audit-logs/{entry['audit_log_id']}").json()
        assert detail["flag_reasons"] == ["gap_detected"]
        assert "Gap in Sequence" in detail["explanation"]

    def test_resolve_then_immutable(self, seeded, completed_run, memory_store):
        entry = self.flagged_entry(seeded)
        data = seeded.post(f"/api/audit-logs/{entry['audit_log_id']}/resolve",
                           json={"next_box": 3, "actor": "ops@example.com", "note": "box 3 reshipped"}).json()
        assert data["ok"] is True
        assert data["entry"]["override"] is True
        assert data["state"]["current_position"] == 2
        assert memory_store.states[GAP_SUBSCRIBER]["manually_adjusted"] is True

        again = seeded.post(f"/api/audit-logs/{entry['audit_log_id']}/resolve", json={"next_box": 4}).json()
        assert "error" in again

    def test_resolve_rejects_zero(self, seeded, completed_run):
        entry = self.flagged_entry(seeded)
        data = seeded.post(f"/api/audit-logs/{entry['audit_log_id']}/resolve", json={"next_box": 0}).json()
        assert "error" in data

    def test_skip_with_default_reason(self, seeded, completed_run):
        entry = self.flagged_entry(seeded)
        data = seeded.post(f"/api/audit-logs/{entry['audit_log_id']}/skip", json={}).json()
        assert data["entry"]["status"] == "skipped"
        assert data["entry"]["resolution_note"] == "Skipped by user"

    def test_clean_subscriber_has_committed_state(self, seeded, completed_run):
        data = seeded.get(f"/api/subscribers/{CLEAN_SUBSCRIBER}").json()
        assert data["subscriber"]["migration_status"] == "audited"
        assert data["state"]["next_sequence"] == 4


class TestUnknownSkus:
    def test_queue_and_alias_resolution(self, seeded, completed_run):
        queue = seeded.get(f"/api/merchants/{M}/unknown-skus").json()
        assert [(g["sku"], g["count"]) for g in queue] == [("EH-STICKER", 1)]

        alias = seeded.post(f"/api/merchants/{M}/aliases", json={"sku": "EH-STICKER", "sequence": 1}).json()
        assert alias["sku"] == "eh-sticker"
        assert seeded.get(f"/api/merchants/{M}/unknown-skus").json() == []


class TestCatalogEndpoints:
    def test_alias_delete_requires_confirm(self, seeded, memory_store):
        alias = seeded.post(f"/api/merchants/{M}/aliases", json={"sku": "LEGACY-1", "sequence": 1}).json()
        variation = next(iter(memory_store.variations.values()))
        variation["alias_id"] = alias["alias_id"]

        refused = seeded.delete(f"/api/merchants/{M}/aliases/{alias['alias_id']}").json()
        assert "Confirm" in refused["error"]
        done = seeded.delete(f"/api/merchants/{M}/aliases/{alias['alias_id']}", params={"confirm": "true"}).json()
        assert done == {"ok": True, "demoted_variations": 1}
        assert alias["alias_id"] not in memory_store.aliases

    def test_invalid_alias(self, client):
        data = client.post(f"/api/merchants/{M}/aliases", json={"sku": "X", "sequence": 0}).json()
        assert "error" in data

    def test_classify_validation(self, seeded):
        data = seeded.post(f"/api/merchants/{M}/variations/classify",
                           json={"variation_ids": [], "category": "maybe"}).json()
        assert "error" in data

    def test_pattern_lifecycle(self, client):
        assert "error" in client.post(f"/api/merchants/{M}/patterns",
                                      json={"pattern": "(", "pattern_type": "regex", "sequence": 1}).json()
        pattern = client.post(f"/api/merchants/{M}/patterns", json={"pattern": "Episode {N}"}).json()
        assert [p["pattern_id"] for p in client.get(f"/api/merchants/{M}/patterns").json()] == [pattern["pattern_id"]]
        assert client.delete(f"/api/merchants/{M}/patterns/{pattern['pattern_id']}").json() == {"ok": True}
        assert "error" in client.delete(f"/api/merchants/{M}/patterns/{pattern['pattern_id']}").json()

    def test_heuristic_suggestions_and_confirm(self, seeded, memory_store):
        data = seeded.post(f"/api/merchants/{M}/suggestions").json()
        assert data["strategy"] == "heuristic"
        assert data["summary"]["subscription"] > 0
        confirmed = seeded.post(f"/api/merchants/{M}/suggestions/confirm",
                                json={"category": "subscription", "actor": "ops"}).json()
        assert confirmed["confirmed"] == data["summary"]["subscription"]
        assert seeded.get(f"/api/merchants/{M}/suggestions").json()["summary"]["subscription"] == 0

    def test_billing_not_configured(self, seeded):
        assert "error" in seeded.post(f"/api/merchants/{M}/subscribers/import").json()
        assert "error" in seeded.post(f"/api/subscribers/{CLEAN_SUBSCRIBER}/recalculate").json()


class TestExports:
    def test_csv(self, seeded, completed_run):
        response = seeded.get(f"/api/merchants/{M}/export/audit-logs")
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/csv")
        lines = response.text.strip().splitlines()
        assert lines[0].startswith("audit_log_id,run_id,subscriber_id")
        assert len(lines) == 38

    def test_pdf(self, seeded, completed_run):
        response = seeded.get(f"/api/runs/{completed_run}/report")
        assert response.status_code == 200
        assert response.headers["content-type"] == "application/pdf"
        assert response.content[:4] == b"%PDF"
