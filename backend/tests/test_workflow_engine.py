"""Tests for the workflow execution engine."""

import asyncio
from decimal import Decimal

import pytest
from sqlalchemy import select

from core.constants import ExecutionStatus, TransactionStatus
from core.exceptions import NotFoundError, TerminalStateViolation
from db.models.transaction import Transaction
from tests.factories import form_step
from tests.fakes import FakeLedger, FakeServiceAdapter, permanent_failure, retryable_failure
from workflow.adapters import AdapterResult
from workflow.engine import DECLINE_REASON, SUPERSEDED_REASON, WorkflowEngine, build_aliases

ACCOUNT = {"accountNumber": "1001001001"}
TRANSFER_INPUT = {"amount": 500, "toAccount": "2002002002"}


def _engine(db_session, service_adapter=None, ledger=None) -> WorkflowEngine:
    return WorkflowEngine(db_session, service_adapter or FakeServiceAdapter(), ledger or FakeLedger())


def _confirmation(order: int, decline_action: str = "CANCEL", **overrides) -> dict:
    step = {
        "type": "CONFIRMATION",
        "order": order,
        "label": "Confirm",
        "config": {
            "message": "Send {{ step_0.amount }} to {{ step_0.toAccount }}?",
            "declineAction": decline_action,
        },
    }
    step.update(overrides)
    return step


def _api_call(order: int, endpoint: str, mode: str = "SERVER_SYNC", **overrides) -> dict:
    step = {
        "type": "API_CALL",
        "order": order,
        "label": f"Call {endpoint}",
        "execution_mode": mode,
        "trigger_timing": "AFTER_STEP",
        "trigger_endpoint": endpoint,
    }
    step.update(overrides)
    return step


def _otp(order: int, max_attempts: int = 3) -> dict:
    return {
        "type": "OTP",
        "order": order,
        "label": "OTP",
        "execution_mode": "SERVER_SYNC",
        "trigger_timing": "BOTH",
        "trigger_endpoint": "otp",
        "retry_config": {"maxRetries": max_attempts},
    }


@pytest.mark.integration
class TestTransferFlow:

    async def test_form_then_transaction_then_complete(self, db_session, transfer_workflow):
        ledger = FakeLedger()
        engine = _engine(db_session, ledger=ledger)

        started = await engine.start(
            transfer_workflow.id, initial_context=ACCOUNT, user_id="u-1", session_id="s-1"
        )
        execution, steps = started.execution, started.steps
        assert execution.status == ExecutionStatus.IN_PROGRESS.value
        assert execution.current_step_id == steps[0].id
        assert execution.step_aliases["transferForm"] == steps[0].id

        form = await engine.execute_step(execution.id, steps[0].id, TRANSFER_INPUT)
        assert form.success and form.should_proceed
        assert form.current_step_id == steps[1].id

        post = await engine.execute_step(execution.id, steps[1].id, {})
        assert post.success, post.error
        assert post.result["status"] == TransactionStatus.COMPLETED.value
        assert post.current_step_id == steps[1].id

        assert len(ledger.calls) == 1
        call = ledger.calls[0]
        assert call["amount"] == Decimal("500")
        assert call["parties"]["from_account_number"] == "1001001001"
        assert call["parties"]["to_account_number"] == "2002002002"
        assert call["description"] == "Transfer of 500"

        done = await engine.complete(execution.id)
        assert done.success
        assert done.status == ExecutionStatus.COMPLETED.value
        recorded = done.result["context"][steps[1].id]["result"]
        assert recorded["reference"] == call["reference"]
        assert done.result["data"]["transferForm"]["amount"] == 500

    async def test_failed_final_step_fails_execution(self, db_session, transfer_workflow):
        engine = _engine(db_session, ledger=FakeLedger(permanent_failure()))
        execution = (await engine.start(transfer_workflow.id, initial_context=ACCOUNT)).execution
        steps = engine.active_steps(execution)

        await engine.execute_step(execution.id, steps[0].id, TRANSFER_INPUT)
        post = await engine.execute_step(execution.id, steps[1].id, {})
        assert not post.success
        assert post.error == "Insufficient funds in the source account"
        assert post.current_step_id == steps[1].id

        done = await engine.complete(execution.id)
        assert not done.success
        assert done.error_code == "STEP_FAILED"
        assert done.status == ExecutionStatus.FAILED.value

    async def test_rerun_reuses_failed_transaction(self, db_session, transfer_workflow):
        ledger = FakeLedger(retryable_failure())
        engine = _engine(db_session, ledger=ledger)
        execution = (await engine.start(transfer_workflow.id, initial_context=ACCOUNT)).execution
        steps = engine.active_steps(execution)
        await engine.execute_step(execution.id, steps[0].id, TRANSFER_INPUT)

        first = await engine.execute_step(execution.id, steps[1].id, {})
        assert not first.success
        assert first.error == "Transaction is processing and will be retried automatically"

        second = await engine.execute_step(execution.id, steps[1].id, {})
        assert second.success
        assert second.result["transactionId"] == first.result["transactionId"]

        rows = (await db_session.execute(select(Transaction))).scalars().all()
        assert len(rows) == 1
        assert rows[0].status == TransactionStatus.COMPLETED.value
        assert [c["reference"] for c in ledger.calls] == [rows[0].reference] * 2

    async def test_complete_with_steps_left(self, db_session, transfer_workflow):
        engine = _engine(db_session)
        execution = (await engine.start(transfer_workflow.id)).execution

        done = await engine.complete(execution.id)
        assert not done.success
        assert done.error_code == "OUT_OF_SEQUENCE"
        assert done.status == ExecutionStatus.IN_PROGRESS.value


@pytest.mark.integration
class TestSequencing:

    async def test_wrong_step_rejected(self, db_session, transfer_workflow):
        engine = _engine(db_session)
        started = await engine.start(transfer_workflow.id)

        outcome = await engine.execute_step(started.execution.id, started.steps[1].id, {})
        assert not outcome.success
        assert outcome.error_code == "OUT_OF_SEQUENCE"
        assert outcome.current_step_id == started.steps[0].id

    async def test_both_timing_rejected_on_call(self, db_session, transfer_workflow):
        engine = _engine(db_session)
        started = await engine.start(transfer_workflow.id)

        outcome = await engine.execute_step(started.execution.id, started.steps[0].id, {}, timing="BOTH")
        assert outcome.error_code == "OUT_OF_SEQUENCE"

    async def test_after_step_needs_before_step_for_both(self, db_session, make_workflow):
        workflow = await make_workflow([_otp(0)])
        adapter = FakeServiceAdapter()
        engine = _engine(db_session, adapter)
        started = await engine.start(workflow.id)
        execution_id, step_id = started.execution.id, started.steps[0].id

        early = await engine.execute_step(execution_id, step_id, {"otp": "123456"})
        assert early.error_code == "OUT_OF_SEQUENCE"
        assert adapter.calls == []

        sent = await engine.execute_step(execution_id, step_id, {}, timing="BEFORE_STEP")
        assert sent.success
        assert sent.current_step_id == step_id

        verified = await engine.execute_step(execution_id, step_id, {"otp": "123456"})
        assert verified.success
        assert verified.current_step_id == step_id
        assert len(adapter.calls_to("otp")) == 2

    async def test_otp_attempts_capped(self, db_session, make_workflow):
        workflow = await make_workflow([_otp(0, max_attempts=2)])
        invalid = AdapterResult(False, None, "Invalid OTP")
        adapter = FakeServiceAdapter({"otp": [AdapterResult(True, {"sent": True}), invalid, invalid]})
        engine = _engine(db_session, adapter)
        started = await engine.start(workflow.id)
        execution_id, step_id = started.execution.id, started.steps[0].id

        await engine.execute_step(execution_id, step_id, {}, timing="BEFORE_STEP")
        for _ in range(2):
            attempt = await engine.execute_step(execution_id, step_id, {"otp": "000000"})
            assert attempt.error == "Invalid OTP"

        capped = await engine.execute_step(execution_id, step_id, {"otp": "000000"})
        assert capped.error_code == "ADAPTER_ERROR"
        assert "Maximum attempts (2)" in capped.error
        assert len(adapter.calls_to("otp")) == 3

    async def test_terminal_execution_rejects_steps(self, db_session, transfer_workflow):
        engine = _engine(db_session)
        started = await engine.start(transfer_workflow.id)
        await engine.cancel(started.execution.id)

        outcome = await engine.execute_step(started.execution.id, started.steps[0].id, TRANSFER_INPUT)
        assert outcome.error_code == "TERMINAL_STATE"
        assert outcome.execution_status == ExecutionStatus.CANCELLED.value


@pytest.mark.integration
class TestServerSteps:

    async def test_server_validation_field_errors(self, db_session, make_workflow):
        rules = [{"id": "amount", "type": "number", "required": True, "validation": {"min": 1}}]
        workflow = await make_workflow(
            [
                form_step(
                    0,
                    execution_mode="SERVER_VALIDATION",
                    trigger_timing="AFTER_STEP",
                    trigger_endpoint="amounts/check",
                    validation=rules,
                )
            ]
        )
        adapter = FakeServiceAdapter()
        engine = _engine(db_session, adapter)
        started = await engine.start(workflow.id)

        outcome = await engine.execute_step(started.execution.id, started.steps[0].id, {"amount": 0})
        assert outcome.error_code == "VALIDATION_ERROR"
        assert outcome.field_errors == {"amount": "Must be >= 1"}
        assert adapter.calls == []

    async def test_client_only_skips_validation(self, db_session, transfer_workflow):
        engine = _engine(db_session)
        started = await engine.start(transfer_workflow.id)

        outcome = await engine.execute_step(started.execution.id, started.steps[0].id, {})
        assert outcome.success

    async def test_call_passes_parameters_and_headers(self, db_session, make_workflow):
        workflow = await make_workflow(
            [
                form_step(0, data_key="payee"),
                _api_call(1, "accounts/lookup", config={"parameterMapping": {"account": "payee.toAccount"}}),
            ]
        )
        adapter = FakeServiceAdapter({"accounts/lookup": AdapterResult(True, {"accountName": "Chikondi"})})
        engine = _engine(db_session, adapter)
        started = await engine.start(workflow.id, user_id="u-9", session_id="s-9")
        execution_id = started.execution.id

        await engine.execute_step(execution_id, started.steps[0].id, {"toAccount": "300400"})
        outcome = await engine.execute_step(execution_id, started.steps[1].id, {})

        assert outcome.result == {"accountName": "Chikondi"}
        call = adapter.calls_to("accounts/lookup")[0]
        assert call["parameters"] == {"account": "300400"}
        assert call["headers"]["X-User-Id"] == "u-9"
        assert call["headers"]["X-Execution-Id"] == execution_id

    async def test_timeout_fails_without_advancing(self, db_session, make_workflow):
        workflow = await make_workflow([_api_call(0, "slow", timeout_ms=50)])
        engine = _engine(db_session, FakeServiceAdapter(delay=0.5))
        started = await engine.start(workflow.id)

        outcome = await engine.execute_step(started.execution.id, started.steps[0].id, {})
        assert not outcome.success
        assert outcome.error == "Step timed out after 50ms"
        assert outcome.current_step_id == started.steps[0].id

        execution = await engine.get(started.execution.id)
        assert execution.context[started.steps[0].id]["success"] is False

    async def test_adapter_exception_becomes_failure(self, db_session, make_workflow):
        workflow = await make_workflow([_api_call(0, "broken")])
        engine = _engine(db_session, FakeServiceAdapter({"broken": RuntimeError("boom")}))
        started = await engine.start(workflow.id)

        outcome = await engine.execute_step(started.execution.id, started.steps[0].id, {})
        assert not outcome.success
        assert outcome.error == "boom"

    async def test_async_trigger_does_not_wait(self, db_session, make_workflow):
        workflow = await make_workflow([_api_call(0, "notify", mode="SERVER_ASYNC")])
        adapter = FakeServiceAdapter(delay=0.01)
        engine = _engine(db_session, adapter)
        started = await engine.start(workflow.id)

        outcome = await engine.execute_step(started.execution.id, started.steps[0].id, {"note": "hi"})
        assert outcome.success and outcome.should_proceed
        assert outcome.result == {"message": "Async trigger initiated"}

        await asyncio.sleep(0.05)
        assert adapter.calls_to("notify")[0]["parameters"] == {"note": "hi"}

    async def test_unresolved_reference_not_recorded(self, db_session, make_workflow):
        workflow = await make_workflow(
            [_api_call(0, "lookup", config={"parameterMapping": {"account": "step_9.account"}})]
        )
        adapter = FakeServiceAdapter()
        engine = _engine(db_session, adapter)
        started = await engine.start(workflow.id)

        outcome = await engine.execute_step(started.execution.id, started.steps[0].id, {})
        assert outcome.error_code == "UNRESOLVED_REFERENCE"
        assert adapter.calls == []
        execution = await engine.get(started.execution.id)
        assert execution.context == {}


@pytest.mark.integration
class TestConfirmation:

    async def test_decline_returns_to_previous_step(self, db_session, make_workflow):
        workflow = await make_workflow(
            [form_step(0, data_key="payee"), form_step(1, data_key="amountForm"), _confirmation(2, "PREVIOUS_STEP")]
        )
        engine = _engine(db_session)
        started = await engine.start(workflow.id)
        execution_id, steps = started.execution.id, started.steps

        await engine.execute_step(execution_id, steps[0].id, {"toAccount": "200"})
        await engine.execute_step(execution_id, steps[1].id, {"amount": 10})
        declined = await engine.execute_step(execution_id, steps[2].id, {"confirmed": False})

        assert declined.success and not declined.should_proceed
        assert declined.current_step_id == steps[1].id
        assert declined.result["action"] == "PREVIOUS_STEP"

        again = await engine.execute_step(execution_id, steps[1].id, {"amount": 20})
        assert again.current_step_id == steps[2].id

    async def test_decline_cancels(self, db_session, make_workflow):
        workflow = await make_workflow([form_step(0), _confirmation(1)])
        engine = _engine(db_session)
        started = await engine.start(workflow.id)

        await engine.execute_step(started.execution.id, started.steps[0].id, {"amount": 1})
        declined = await engine.execute_step(started.execution.id, started.steps[1].id, {"confirmed": "false"})

        assert declined.execution_status == ExecutionStatus.CANCELLED.value
        execution = await engine.get(started.execution.id)
        assert execution.error == DECLINE_REASON

    async def test_previous_from_first_step(self, db_session, make_workflow):
        workflow = await make_workflow([_confirmation(0, "PREVIOUS_STEP")])
        engine = _engine(db_session)
        started = await engine.start(workflow.id)

        outcome = await engine.execute_step(started.execution.id, started.steps[0].id, {"declined": True})
        assert outcome.error_code == "OUT_OF_SEQUENCE"

    async def test_render_step_preview(self, db_session, make_workflow):
        workflow = await make_workflow([form_step(0), _confirmation(1)])
        engine = _engine(db_session)
        started = await engine.start(workflow.id)
        confirm_id = started.steps[1].id

        before = await engine.render_step(started.execution.id, confirm_id)
        assert set(before["errors"]) == {"message"}

        await engine.execute_step(started.execution.id, started.steps[0].id, TRANSFER_INPUT)
        after = await engine.render_step(started.execution.id, confirm_id)
        assert after["rendered"] == {"message": "Send 500 to 2002002002?"}
        assert after["errors"] == {}


@pytest.mark.integration
class TestLifecycle:

    async def test_new_execution_supersedes_session(self, db_session, transfer_workflow):
        engine = _engine(db_session)
        first = (await engine.start(transfer_workflow.id, session_id="s-1")).execution
        second = (await engine.start(transfer_workflow.id, session_id="s-1")).execution

        assert first.status == ExecutionStatus.CANCELLED.value
        assert first.error == SUPERSEDED_REASON
        assert second.status == ExecutionStatus.IN_PROGRESS.value

    async def test_cancel_twice(self, db_session, transfer_workflow):
        engine = _engine(db_session)
        execution = (await engine.start(transfer_workflow.id)).execution

        first = await engine.cancel(execution.id, "changed my mind")
        assert first.success
        assert first.execution.error == "changed my mind"

        second = await engine.cancel(execution.id)
        assert not second.success
        assert second.error_code == "TERMINAL_STATE"

    async def test_inactive_steps_skipped(self, db_session, make_workflow):
        workflow = await make_workflow([form_step(0), form_step(1, is_active=False), form_step(2)])
        engine = _engine(db_session)
        started = await engine.start(workflow.id)

        assert [s.order for s in started.steps] == [0, 2]
        outcome = await engine.execute_step(started.execution.id, started.steps[0].id, {})
        assert outcome.current_step_id == started.steps[1].id

    async def test_unknown_workflow(self, db_session):
        with pytest.raises(NotFoundError):
            await _engine(db_session).start("missing")

    async def test_list_for_user(self, db_session, transfer_workflow):
        engine = _engine(db_session)
        await engine.start(transfer_workflow.id, user_id="u-1")
        await engine.start(transfer_workflow.id, user_id="u-2")

        items, total = await engine.list_for_user("u-1")
        assert total == 1
        assert items[0].user_id == "u-1"


@pytest.mark.unit
def test_label_aliases_skip_duplicates():
    class _Step:
        def __init__(self, id, order, label, data_key=None):
            self.id, self.order, self.label, self.data_key = id, order, label, data_key

    aliases = build_aliases(
        [_Step("a", 0, "Amount", "amountForm"), _Step("b", 1, "Same"), _Step("c", 2, "Same")]
    )
    assert aliases == {"step_0": "a", "amountForm": "a", "step_1": "b", "step_2": "c", "Amount": "a"}


@pytest.mark.integration
class TestGuards:

    async def test_double_tap_posts_once(self, db_session, session_factory, transfer_workflow):
        ledger = FakeLedger()
        ledger.gate = asyncio.Event()
        engine = _engine(db_session, ledger=ledger)
        started = await engine.start(transfer_workflow.id, initial_context=ACCOUNT)
        execution_id, steps = started.execution.id, started.steps
        await engine.execute_step(execution_id, steps[0].id, TRANSFER_INPUT)
        await db_session.commit()

        async def _post():
            async with session_factory() as session:
                outcome = await _engine(session, ledger=ledger).execute_step(execution_id, steps[1].id, {})
                await session.commit()
                return outcome

        first = asyncio.create_task(_post())
        await asyncio.wait_for(ledger.entered.wait(), timeout=2)
        second = asyncio.create_task(_post())
        await asyncio.sleep(0.05)
        ledger.gate.set()
        results = await asyncio.gather(first, second)

        assert results[0].success
        assert len(ledger.calls) == 1
        async with session_factory() as session:
            rows = (await session.execute(select(Transaction))).scalars().all()
        assert len(rows) == 1
        assert rows[0].reference == f"TXN-{execution_id}-{steps[1].id}"

    async def test_passed_final_step_is_not_rerun(self, db_session, transfer_workflow):
        ledger = FakeLedger()
        engine = _engine(db_session, ledger=ledger)
        started = await engine.start(transfer_workflow.id, initial_context=ACCOUNT)
        execution_id, steps = started.execution.id, started.steps
        await engine.execute_step(execution_id, steps[0].id, TRANSFER_INPUT)
        await engine.execute_step(execution_id, steps[1].id, {})

        again = await engine.execute_step(execution_id, steps[1].id, {})
        assert again.error_code == "OUT_OF_SEQUENCE"
        assert again.current_step_id == steps[1].id
        assert len(ledger.calls) == 1

        done = await engine.complete(execution_id)
        assert done.success
        execution = await engine.get(execution_id)
        assert execution.current_step_id == steps[1].id

    async def test_draft_workflow_cannot_start(self, db_session, make_workflow):
        workflow = await make_workflow([form_step(0)], publish=False)

        with pytest.raises(TerminalStateViolation):
            await _engine(db_session).start(workflow.id)

    async def test_validation_step_never_runs_in_background(self, db_session, make_workflow):
        check = {
            "type": "VALIDATION",
            "order": 0,
            "label": "Check limits",
            "execution_mode": "SERVER_ASYNC",
            "trigger_timing": "AFTER_STEP",
            "trigger_endpoint": "limits/check",
        }
        workflow = await make_workflow([check])
        adapter = FakeServiceAdapter({"limits/check": AdapterResult(False, None, "Daily limit exceeded")})
        engine = _engine(db_session, adapter)
        started = await engine.start(workflow.id)

        outcome = await engine.execute_step(started.execution.id, started.steps[0].id, {})
        assert not outcome.success and not outcome.should_proceed
        assert outcome.error == "Daily limit exceeded"

    async def test_broken_field_rules_become_outcome(self, db_session, make_workflow):
        workflow = await make_workflow(
            [form_step(0, execution_mode="SERVER_VALIDATION", trigger_timing="AFTER_STEP", trigger_endpoint="check")]
        )
        step = workflow.steps[0]
        step.config = {"fields": [{"label": "no id"}]}
        await db_session.flush()
        engine = _engine(db_session)
        started = await engine.start(workflow.id)

        outcome = await engine.execute_step(started.execution.id, step.id, {"amount": 1})
        assert not outcome.success
        assert outcome.error_code == "VALIDATION_ERROR"

    async def test_unknown_timing_becomes_outcome(self, db_session, transfer_workflow):
        engine = _engine(db_session)
        started = await engine.start(transfer_workflow.id)

        outcome = await engine.execute_step(started.execution.id, started.steps[0].id, {}, timing="DURING_STEP")
        assert outcome.error_code == "VALIDATION_ERROR"
        assert outcome.error == "Unknown trigger timing 'DURING_STEP'"

    async def test_unresolved_otp_call_keeps_attempts(self, db_session, make_workflow):
        otp = _otp(0, max_attempts=1)
        otp["config"] = {"parameterMapping": {"phone": "variables.phoneNumber"}}
        workflow = await make_workflow([otp])
        adapter = FakeServiceAdapter()
        engine = _engine(db_session, adapter)
        started = await engine.start(workflow.id)
        execution_id, step_id = started.execution.id, started.steps[0].id

        outcome = await engine.execute_step(execution_id, step_id, {}, timing="BEFORE_STEP")
        assert outcome.error_code == "UNRESOLVED_REFERENCE"

        execution = await engine.get(execution_id)
        assert "attempts" not in execution.step_state.get(step_id, {})
        assert adapter.calls == []
