"""Integration tests for API endpoints.

These tests exercise the full HTTP stack: FastAPI → route → engine/state
machine → DB, with the ledger and the service gateway replaced by fakes.
"""

import pytest

from tests.fakes import permanent_failure, retryable_failure

TRANSFER_WORKFLOW = {
    "name": "Send money",
    "steps": [
        {
            "type": "FORM",
            "order": 0,
            "label": "Details",
            "config": {"dataKey": "transferForm"},
        },
        {
            "type": "CONFIRMATION",
            "order": 1,
            "label": "Confirm",
            "config": {"message": "Send {{ transferForm.amount }} to {{ transferForm.toAccount }}?"},
        },
        {
            "type": "POST_TRANSACTION",
            "order": 2,
            "label": "Post",
            "executionMode": "SERVER_SYNC",
            "triggerTiming": "AFTER_STEP",
            "retryConfig": {"maxRetries": 3},
            "config": {
                "transactionType": "TRANSFER",
                "parameterMapping": {
                    "amount": "transferForm.amount",
                    "fromAccountNumber": "variables.accountNumber",
                    "toAccountNumber": "transferForm.toAccount",
                },
            },
        },
    ],
}

TRANSACTION = {
    "type": "TRANSFER",
    "amount": "250.00",
    "currency": "MWK",
    "fromAccountNumber": "1001001001",
    "toAccountNumber": "2002002002",
}


async def _published_workflow(client) -> dict:
    resp = await client.post("/api/v1/workflows/", json=TRANSFER_WORKFLOW)
    assert resp.status_code == 201, resp.text
    workflow = resp.json()
    resp = await client.post(f"/api/v1/workflows/{workflow['id']}/publish")
    assert resp.status_code == 200
    return resp.json()


# ─── Health Endpoints ───

class TestHealthIntegration:
    """Test health endpoints through HTTP."""

    async def test_root_returns_app_info(self, client):
        resp = await client.get("/api/v1/health/")
        assert resp.status_code == 200
        data = resp.json()
        assert data["app"] == "Banking Workflow Engine"
        assert data["status"] == "ok"

    async def test_unversioned_health_check(self, client):
        resp = await client.get("/api/health/health")
        assert resp.status_code == 200
        data = resp.json()
        assert data["checks"]["database"] == "ok"
        assert "uptime_seconds" in data


# ─── Workflow Endpoints ───

class TestWorkflowIntegration:
    """Authoring through HTTP."""

    async def test_create_and_publish(self, client):
        workflow = await _published_workflow(client)
        assert workflow["status"] == "published"
        assert [s["order"] for s in workflow["steps"]] == [0, 1, 2]
        assert workflow["steps"][2]["retryConfig"] == {"maxRetries": 3}

    async def test_invalid_definition_field_errors(self, client):
        body = {"name": "Broken", "steps": [{"type": "FORM", "order": 0}, {"type": "FORM", "order": 2}]}
        resp = await client.post("/api/v1/workflows/", json=body)
        assert resp.status_code == 422
        data = resp.json()
        assert data["code"] == "VALIDATION_ERROR"
        assert "steps" in data["field_errors"]

    async def test_published_steps_cannot_change(self, client):
        workflow = await _published_workflow(client)
        resp = await client.put(f"/api/v1/workflows/{workflow['id']}/steps", json=[])
        assert resp.status_code == 409
        assert resp.json()["code"] == "TERMINAL_STATE"

    async def test_list_workflows(self, client):
        await _published_workflow(client)
        resp = await client.get("/api/v1/workflows/", params={"status": "published"})
        assert resp.status_code == 200
        assert resp.json()["total"] == 1

    async def test_missing_workflow_error_body(self, client):
        resp = await client.get("/api/v1/workflows/nope", headers={"X-Request-ID": "req-42"})
        assert resp.status_code == 404
        assert resp.json() == {
            "detail": "Workflow nope not found",
            "code": "NOT_FOUND",
            "request_id": "req-42",
        }


# ─── Execution Endpoints ───

class TestExecutionIntegration:
    """A full transfer flow driven by a client."""

    async def _start(self, client) -> dict:
        workflow = await _published_workflow(client)
        resp = await client.post(
            "/api/v1/workflow-executions/",
            json={
                "workflowId": workflow["id"],
                "userId": "u-1",
                "sessionId": "s-1",
                "initialContext": {"accountNumber": "1001001001"},
            },
        )
        assert resp.status_code == 201, resp.text
        return resp.json()

    async def test_transfer_flow(self, client, ledger):
        execution = await self._start(client)
        base = f"/api/v1/workflow-executions/{execution['id']}"
        form, confirm, post = (step["id"] for step in execution["steps"])
        assert execution["currentStepId"] == form

        resp = await client.post(f"{base}/steps/{form}", json={"input": {"amount": 500, "toAccount": "2002002002"}})
        assert resp.json()["currentStepId"] == confirm

        preview = (await client.get(f"{base}/steps/{confirm}/preview")).json()
        assert preview["rendered"]["message"] == "Send 500 to 2002002002?"

        resp = await client.post(f"{base}/steps/{confirm}", json={"input": {"confirmed": True}})
        assert resp.json()["shouldProceed"] is True

        resp = await client.post(f"{base}/steps/{post}", json={"input": {}})
        data = resp.json()
        assert data["success"] is True, data
        assert data["result"]["status"] == "COMPLETED"
        assert len(ledger.calls) == 1

        resp = await client.post(f"{base}/complete")
        data = resp.json()
        assert data["success"] is True
        assert data["status"] == "COMPLETED"

        listed = (await client.get("/api/v1/workflow-executions/", params={"userId": "u-1"})).json()
        assert listed["total"] == 1

    async def test_out_of_sequence_is_reported(self, client):
        execution = await self._start(client)
        post = execution["steps"][2]["id"]

        resp = await client.post(f"/api/v1/workflow-executions/{execution['id']}/steps/{post}", json={})
        assert resp.status_code == 200
        data = resp.json()
        assert data["success"] is False
        assert data["errorCode"] == "OUT_OF_SEQUENCE"

    async def test_cancel(self, client):
        execution = await self._start(client)
        resp = await client.post(
            f"/api/v1/workflow-executions/{execution['id']}/cancel",
            json={"reason": "Changed my mind"},
        )
        data = resp.json()
        assert data["success"] is True
        assert data["execution"]["status"] == "CANCELLED"
        assert data["execution"]["error"] == "Changed my mind"

    async def test_unknown_execution(self, client):
        resp = await client.get("/api/v1/workflow-executions/missing")
        assert resp.status_code == 404
        assert resp.json()["code"] == "NOT_FOUND"


# ─── Transaction Endpoints ───

class TestTransactionIntegration:
    """Transaction proxy through HTTP."""

    async def test_create_and_submit(self, client, ledger):
        resp = await client.post("/api/v1/transactions/", json=TRANSACTION)
        assert resp.status_code == 201
        data = resp.json()
        assert data["success"] is True
        txn = data["transaction"]
        assert txn["status"] == "COMPLETED"
        assert txn["ledgerReference"] == "LEDGER-0001"
        assert ledger.calls[0]["reference"] == txn["reference"]

        by_ref = await client.get(f"/api/v1/transactions/by-reference/{txn['reference']}")
        assert by_ref.json()["id"] == txn["id"]

    async def test_create_without_submit(self, client, ledger):
        resp = await client.post("/api/v1/transactions/", json={**TRANSACTION, "submit": False})
        assert resp.json()["transaction"]["status"] == "PENDING"
        assert ledger.calls == []

    async def test_invalid_draft(self, client):
        resp = await client.post("/api/v1/transactions/", json={**TRANSACTION, "toAccountNumber": None})
        data = resp.json()
        assert data["success"] is False
        assert data["errorCode"] == "VALIDATION_ERROR"
        assert data["errors"] == ["to_account_number is required for TRANSFER transactions"]

    async def test_retry_after_failure(self, client, ledger):
        ledger.results.append(retryable_failure())
        created = (await client.post("/api/v1/transactions/", json=TRANSACTION)).json()
        txn_id = created["transaction"]["id"]
        assert created["transaction"]["status"] == "FAILED"
        assert created["message"] == "Transaction is processing and will be retried automatically"

        stats = (await client.get("/api/v1/transactions/retry-stats")).json()
        assert stats["totalRetryable"] == 1
        assert stats["nextRetryTime"] is not None

        retried = (await client.post(f"/api/v1/transactions/{txn_id}/retry")).json()
        assert retried["success"] is True
        assert retried["transaction"]["status"] == "COMPLETED"

        history = (await client.get(f"/api/v1/transactions/{txn_id}/history")).json()
        assert [(h["fromStatus"], h["toStatus"]) for h in history] == [
            (None, "PENDING"),
            ("PROCESSING", "FAILED"),
            ("PROCESSING", "COMPLETED"),
        ]

    async def test_retry_of_permanent_failure_rejected(self, client, ledger):
        ledger.results.append(permanent_failure())
        created = (await client.post("/api/v1/transactions/", json=TRANSACTION)).json()
        assert created["transaction"]["status"] == "FAILED_PERMANENT"

        retried = (await client.post(f"/api/v1/transactions/{created['transaction']['id']}/retry")).json()
        assert retried["success"] is False
        assert retried["errorCode"] == "TERMINAL_STATE"

    async def test_reverse(self, client):
        created = (await client.post("/api/v1/transactions/", json=TRANSACTION)).json()
        txn_id = created["transaction"]["id"]

        resp = await client.post(f"/api/v1/transactions/{txn_id}/reverse", json={"reason": "Customer dispute"})
        data = resp.json()
        assert data["success"] is True
        reversal = data["transaction"]
        assert reversal["isReversal"] is True
        assert reversal["originalTransactionId"] == txn_id
        assert reversal["fromAccountNumber"] == "2002002002"

        original = (await client.get(f"/api/v1/transactions/{txn_id}")).json()
        assert original["status"] == "REVERSED"

        again = (await client.post(f"/api/v1/transactions/{txn_id}/reverse", json={"reason": "twice"})).json()
        assert again["success"] is False

    async def test_list_filters(self, client):
        await client.post("/api/v1/transactions/", json=TRANSACTION)
        await client.post("/api/v1/transactions/", json={**TRANSACTION, "submit": False})

        resp = await client.get("/api/v1/transactions/", params={"status": "PENDING"})
        assert resp.json()["total"] == 1

        resp = await client.get("/api/v1/transactions/", params={"account": "1001001001"})
        assert resp.json()["total"] == 2

    async def test_unknown_transaction(self, client):
        resp = await client.get("/api/v1/transactions/missing/history")
        assert resp.status_code == 404
        assert resp.json()["code"] == "NOT_FOUND"
