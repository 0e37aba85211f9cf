"""Tests for the /api/escalation-policies and /api/escalations endpoints."""

import uuid
from datetime import timedelta

import pytest

POLICY = {
    "name": "default",
    "ack_timeout_minutes": 30,
    "severity_overrides": {"critical": {"ack_timeout_minutes": 5}},
    "steps": [
        {"step_number": 1, "delay_minutes": 0, "channels": ["ops"]},
        {"step_number": 2, "delay_minutes": 15, "channels": ["ops-lead"]},
    ],
}


async def create_policy(client, **changes):
    response = await client.post("/api/escalation-policies", json={**POLICY, **changes})
    assert response.status_code == 201, response.text
    return response.json()


async def trigger(client, policy_id, alert_id="alert-1", severity="major"):
    return await client.post(
        f"/api/escalations/alerts/{alert_id}/trigger",
        json={"policy_id": policy_id, "severity": severity},
    )


class TestPolicyEndpoints:
    """Tests for policy CRUD."""

    @pytest.mark.asyncio
    async def test_create_and_get(self, client):
        created = await create_policy(client)

        response = await client.get(f"/api/escalation-policies/{created['id']}")

        assert response.status_code == 200
        data = response.json()
        assert [s["step_number"] for s in data["steps"]] == [1, 2]
        assert data["severity_overrides"] == {"critical": {"ack_timeout_minutes": 5}}
        assert data["steps"][0]["skip_if_acknowledged"] is True

    @pytest.mark.asyncio
    async def test_step_without_recipients_is_rejected(self, client):
        response = await client.post(
            "/api/escalation-policies",
            json={**POLICY, "steps": [{"step_number": 1, "delay_minutes": 0}]},
        )

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_duplicate_step_numbers_are_rejected(self, client):
        step = {"step_number": 1, "channels": ["ops"]}
        response = await client.post(
            "/api/escalation-policies", json={**POLICY, "steps": [step, step]}
        )

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_update_replaces_steps(self, client):
        created = await create_policy(client)

        response = await client.patch(
            f"/api/escalation-policies/{created['id']}",
            json={"steps": [{"step_number": 1, "channels": ["pager"]}]},
        )

        assert response.status_code == 200
        assert [s["channels"] for s in response.json()["steps"]] == [["pager"]]

    @pytest.mark.asyncio
    async def test_list_and_delete(self, client):
        created = await create_policy(client)

        listed = await client.get("/api/escalation-policies")
        deleted = await client.delete(f"/api/escalation-policies/{created['id']}")
        missing = await client.get(f"/api/escalation-policies/{created['id']}")

        assert [p["id"] for p in listed.json()] == [created["id"]]
        assert deleted.status_code == 204
        assert missing.status_code == 404


class TestEscalationEndpoints:
    """Tests for the alert lifecycle over HTTP."""

    @pytest.mark.asyncio
    async def test_trigger_executes_first_step(self, client, engine, dispatcher):
        policy = await create_policy(client)

        response = await trigger(client, policy["id"])
        await engine.drain()

        assert response.status_code == 201
        data = response.json()
        assert data["status"] == "awaiting_ack"
        assert data["ack_timeout_minutes"] == 30
        assert dispatcher.keys == [f"{data['id']}:1"]

    @pytest.mark.asyncio
    async def test_critical_uses_override_timeout(self, client):
        policy = await create_policy(client)

        response = await trigger(client, policy["id"], severity="critical")

        assert response.json()["ack_timeout_minutes"] == 5

    @pytest.mark.asyncio
    async def test_retrigger_is_idempotent(self, client):
        policy = await create_policy(client)

        first = await trigger(client, policy["id"])
        second = await trigger(client, policy["id"])

        assert second.status_code == 201
        assert second.json()["id"] == first.json()["id"]

    @pytest.mark.asyncio
    async def test_retrigger_with_other_severity_conflicts(self, client):
        policy = await create_policy(client)
        await trigger(client, policy["id"])

        response = await trigger(client, policy["id"], severity="critical")

        assert response.status_code == 409

    @pytest.mark.asyncio
    async def test_unknown_policy(self, client):
        response = await trigger(client, str(uuid.uuid4()))

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_inactive_policy(self, client):
        policy = await create_policy(client, active=False)

        response = await trigger(client, policy["id"])

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_acknowledge_stops_escalation(self, client, clock, engine, dispatcher):
        policy = await create_policy(client)
        await trigger(client, policy["id"])

        response = await client.post("/api/escalations/alerts/alert-1/acknowledge")
        await clock.advance(timedelta(hours=1))
        await engine.drain()

        assert response.status_code == 200
        assert response.json()["status"] == "acknowledged"
        assert len(dispatcher.sent) == 1

    @pytest.mark.asyncio
    async def test_acknowledge_unknown_alert_succeeds(self, client):
        response = await client.post("/api/escalations/alerts/nope/acknowledge")

        assert response.status_code == 200
        assert response.json() == {"alert_id": "nope", "status": None, "run": None}

    @pytest.mark.asyncio
    async def test_resolve_and_close(self, client):
        policy = await create_policy(client)
        await trigger(client, policy["id"])

        resolved = await client.post("/api/escalations/alerts/alert-1/resolve")
        closed = await client.post("/api/escalations/alerts/alert-1/close")
        gone = await client.get("/api/escalations/alerts/alert-1")

        assert resolved.json()["status"] == "resolved"
        assert closed.status_code == 200
        assert closed.json()["archived_at"] is not None
        assert gone.status_code == 404

    @pytest.mark.asyncio
    async def test_close_unknown_alert(self, client):
        response = await client.post("/api/escalations/alerts/nope/close")

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_timeline(self, client, clock, engine):
        policy = await create_policy(client)
        await trigger(client, policy["id"])
        await clock.advance(timedelta(minutes=30))
        await engine.drain()

        response = await client.get("/api/escalations/alerts/alert-1/timeline")

        data = response.json()
        assert data["count"] == 2
        assert [e["step_number"] for e in data["events"]] == [1, 2]
        assert [e["dispatch_status"] for e in data["events"]] == ["sent", "sent"]
        assert data["events"][1]["recipients"] == [{"kind": "channel", "id": "ops-lead"}]
