from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

# server.py calls validate_config() at import time, which sys.exit(1) on a half-set trace config.
with patch("slotfill.config.validate_config"):
    from slotfill.server import app


@pytest.fixture
def client():
    return TestClient(app)


class TestHealth:
    def test_health(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.text == "ok"


class TestExtract:
    def test_extracts_for_current_step(self, client):
        resp = client.post("/extract", json={
            "utterance": "my name is Mark Gonzales",
            "state": {"company_id": "acme", "call_id": "c1", "current_step_id": "name"},
        })
        assert resp.status_code == 200
        name = resp.json()["slots"]["name"]
        assert name["value"] == "Mark Gonzales"
        assert name["pattern_tier"] == "primary"

    def test_step_gating(self, client):
        resp = client.post("/extract", json={"utterance": "12155 Metro Parkway", "step_id": "name"})
        assert resp.json()["slots"] == {}


class TestMerge:
    def test_locked_name_rejects(self, client):
        resp = client.post("/merge", json={
            "existing": {"name": {"value": "Mark", "confidence": 0.9, "locked": True,
                                  "lock_tier": "primary", "pattern_tier": "primary"}},
            "incoming": {"name": {"value": "Super Hot", "confidence": 0.9,
                                  "pattern_tier": "secondary", "extracted_explicitly": True}},
        })
        assert resp.status_code == 200
        body = resp.json()
        assert body["decisions"][0]["action"] == "REJECTED"
        assert body["decisions"][0]["reason"] == "primary_name_locked"
        assert body["merged"]["name"]["value"] == "Mark"
        assert body["merged"]["name"]["rejected_candidates"][0]["value"] == "Super Hot"

    def test_bad_candidate(self, client):
        resp = client.post("/merge", json={"incoming": {"name": {"value": "x", "source": "carrier_pigeon"}}})
        assert resp.status_code == 400


class TestFlows:
    def test_resolve(self, client):
        resp = client.post("/flows/resolve", json={"config": {
            "company_id": "c1",
            "name": "Acme Heating",
            "booking_slots": [{"id": "name"}, {"id": "phone"}],
        }})
        body = resp.json()
        assert body["flow_id"] == "acme_heating_booking_v1"
        assert [s["id"] for s in body["steps"]] == ["name", "phone"]

    def test_malformed_validation(self, client):
        resp = client.post("/flows/resolve", json={"config": {
            "company_id": "c1",
            "booking_slots": [{"id": "name", "type": "name", "validation": {"min_length": "two"}}],
        }})
        assert resp.status_code == 200
        assert resp.json()["steps"][0]["id"] == "name"


class TestStep:
    def test_opening_prompt(self, client):
        resp = client.post("/step", json={"state": {"company_id": "acme", "call_id": "c1"}})
        body = resp.json()
        assert body["response"]["kind"] == "prompt"
        assert body["response"]["step_id"] == "name"
        assert body["state"]["current_step_id"] == "name"
        assert body["done"] is False

    def test_turn_with_company_flow(self, client):
        resp = client.post("/step", json={
            "state": {"company_id": "acme", "call_id": "c1"},
            "config": {"company_id": "acme", "booking_slots": [{"id": "name"}]},
            "user_input": "my name is Mark Gonzales",
        })
        body = resp.json()
        assert body["done"] is True
        assert body["state"]["collected"] == {"name": "Mark Gonzales"}

    def test_invalid_state(self, client):
        resp = client.post("/step", json={"state": {"status": "sleeping"}})
        assert resp.status_code == 400

    def test_not_json(self, client):
        resp = client.post("/step", content="hello", headers={"Content-Type": "text/plain"})
        assert resp.status_code == 422


class TestSanitize:
    def test_contaminated_address(self, client):
        resp = client.post("/sanitize", json={"state": {
            "company_id": "acme",
            "call_id": "c1",
            "collected": {"name": "Mark", "address": "Super Hot"},
            "confirmed_slots": ["name", "address"],
        }})
        body = resp.json()
        assert body["fixed"] is True
        assert body["fixed_slots"] == ["address"]
        assert body["rewind_to"] == "address"
        assert body["state"]["collected"] == {"name": "Mark"}
