"""Tests for typed step configuration."""

import pytest

from core.constants import DeclineAction, StepType, TransactionType
from core.exceptions import UnresolvedReference, ValidationError
from workflow.step_config import (
    ApiCallConfig,
    ConfirmationConfig,
    FormConfig,
    PostTransactionConfig,
    parse_step_config,
)
from workflow.templates import TemplateContext, TemplateResolver


def _resolver(step_input=None) -> TemplateResolver:
    context = {"s1": {"input": {"amount": 250, "toAccount": "300400"}, "result": None, "success": True}}
    return TemplateResolver(
        TemplateContext.from_execution(context, {"step_0": "s1"}, {"accountNumber": "100200"}, step_input or {})
    )


@pytest.mark.unit
class TestParseStepConfig:

    def test_registry_picks_model(self):
        assert isinstance(parse_step_config("FORM", {"formId": "f-1"}), FormConfig)
        assert isinstance(parse_step_config(StepType.API_CALL, {}), ApiCallConfig)

    def test_camel_case_keys(self):
        config = parse_step_config(
            "CONFIRMATION",
            {"message": "Send?", "declineAction": "PREVIOUS_STEP", "dataKey": "confirm"},
        )
        assert isinstance(config, ConfirmationConfig)
        assert config.decline_action == DeclineAction.PREVIOUS_STEP
        assert config.data_key == "confirm"
        assert config.confirm_label == "Confirm"

    def test_post_transaction_defaults(self):
        config = parse_step_config("POST_TRANSACTION", None)
        assert isinstance(config, PostTransactionConfig)
        assert config.transaction_type == TransactionType.TRANSFER

    def test_unknown_type(self):
        with pytest.raises(ValidationError):
            parse_step_config("TELEPORT", {})

    def test_invalid_config(self):
        with pytest.raises(ValidationError):
            parse_step_config("CONFIRMATION", {"declineAction": "EXPLODE"})

    def test_form_fields_alias(self):
        config = parse_step_config("FORM", {"fields": [{"id": "amount"}]})
        assert config.form_fields == [{"id": "amount"}]


@pytest.mark.unit
class TestBuildParameters:

    def test_mapping_resolves_paths_and_nests(self):
        config = parse_step_config(
            "API_CALL",
            {"parameterMapping": {"amount": "step_0.amount", "payee.account": "{{ step_0.toAccount }}"}},
        )
        params = config.build_parameters(_resolver(), {})
        assert params == {"amount": 250, "payee": {"account": "300400"}}

    def test_without_mapping_passes_input(self):
        config = parse_step_config("VALIDATION", {})
        assert config.build_parameters(_resolver(), {"otp": "123456"}) == {"otp": "123456"}

    def test_api_call_body_template(self):
        config = parse_step_config("API_CALL", {"body": {"account": "{{ variables.accountNumber }}"}})
        assert config.build_parameters(_resolver(), {"ignored": True}) == {"account": "100200"}

    def test_unresolved_mapping_raises(self):
        config = parse_step_config("API_CALL", {"parameterMapping": {"amount": "step_5.amount"}})
        with pytest.raises(UnresolvedReference):
            config.build_parameters(_resolver(), {})


@pytest.mark.unit
def test_render_and_preview_only_template_fields():
    config = parse_step_config(
        "CONFIRMATION",
        {"message": "Send {{ step_0.amount }} to {{ step_0.toAccount }}?", "confirmLabel": "{{ not.rendered }}"},
    )
    assert config.render(_resolver()) == {"message": "Send 250 to 300400?"}

    broken = parse_step_config("DISPLAY", {"content": "{{ step_0.amount }}", "text": "{{ missing }}"})
    rendered, errors = broken.preview(_resolver())
    assert rendered == {"content": 250}
    assert set(errors) == {"text"}
