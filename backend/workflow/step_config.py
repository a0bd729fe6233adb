"""Typed step configuration.

``WorkflowStep.config`` is stored as free-form JSON. At the engine
boundary it is parsed into the model registered for the step type, so
call sites work with attributes instead of walking dicts. Only the
fields listed in ``template_fields`` go through template resolution.
"""

from typing import Any, ClassVar, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from core.constants import DeclineAction, StepType, TransactionSource, TransactionType
from core.exceptions import ValidationError
from core.utils import set_path
from workflow.templates import TemplateResolver


class BaseStepConfig(BaseModel):
    """Keys shared by every step type."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    template_fields: ClassVar[tuple[str, ...]] = ()

    data_key: Optional[str] = None
    parameter_mapping: dict[str, str] = Field(default_factory=dict)

    def render(self, resolver: TemplateResolver) -> dict[str, Any]:
        """Resolve declared template fields (raises ``UnresolvedReference``)."""
        rendered = {}
        for name in self.template_fields:
            value = getattr(self, name)
            if value is not None:
                rendered[name] = resolver.resolve(value)
        return rendered

    def preview(self, resolver: TemplateResolver) -> tuple[dict[str, Any], dict[str, str]]:
        """Best-effort render; returns ``(rendered, errors)`` per field."""
        rendered, errors = {}, {}
        for name in self.template_fields:
            value = getattr(self, name)
            if value is None:
                continue
            resolved, error = resolver.preview(value)
            if error:
                errors[name] = error
            else:
                rendered[name] = resolved
        return rendered, errors

    def build_parameters(self, resolver: TemplateResolver, step_input: dict) -> dict[str, Any]:
        """Parameters for the external call.

        With a ``parameterMapping`` every target (dotted names nest) is
        bound to its resolved source; without one the submitted input is
        passed through.
        """
        if not self.parameter_mapping:
            return dict(step_input)
        params: dict[str, Any] = {}
        for target, source in self.parameter_mapping.items():
            set_path(params, target, resolver.resolve_reference(source))
        return params


class FormConfig(BaseStepConfig):
    form_id: Optional[str] = None
    form_fields: list[dict] = Field(default_factory=list, alias="fields")


class ApiCallConfig(BaseStepConfig):
    template_fields: ClassVar[tuple[str, ...]] = ("body",)

    method: str = "POST"
    body: Optional[Any] = None

    def build_parameters(self, resolver: TemplateResolver, step_input: dict) -> dict[str, Any]:
        if not self.parameter_mapping and isinstance(self.body, dict):
            return resolver.resolve(self.body)
        return super().build_parameters(resolver, step_input)


class ValidationConfig(BaseStepConfig):
    pass


class ConfirmationConfig(BaseStepConfig):
    template_fields: ClassVar[tuple[str, ...]] = ("message",)

    message: str = ""
    confirm_label: str = "Confirm"
    decline_label: str = "Cancel"
    decline_action: DeclineAction = DeclineAction.CANCEL


class DisplayConfig(BaseStepConfig):
    template_fields: ClassVar[tuple[str, ...]] = ("content", "text")

    content: Optional[str] = None
    text: Optional[str] = None


class RedirectConfig(BaseStepConfig):
    template_fields: ClassVar[tuple[str, ...]] = ("url",)

    url: Optional[str] = None
    target_page_id: Optional[str] = None


class OtpConfig(BaseStepConfig):
    channel: str = "SMS"
    length: int = 6


class PostTransactionConfig(BaseStepConfig):
    template_fields: ClassVar[tuple[str, ...]] = ("description",)

    transaction_type: TransactionType = TransactionType.TRANSFER
    source: TransactionSource = TransactionSource.MOBILE_BANKING
    currency: Optional[str] = None
    description: Optional[str] = None


STEP_CONFIG_MODELS: dict[str, type[BaseStepConfig]] = {
    StepType.FORM.value: FormConfig,
    StepType.API_CALL.value: ApiCallConfig,
    StepType.VALIDATION.value: ValidationConfig,
    StepType.CONFIRMATION.value: ConfirmationConfig,
    StepType.DISPLAY.value: DisplayConfig,
    StepType.REDIRECT.value: RedirectConfig,
    StepType.OTP.value: OtpConfig,
    StepType.POST_TRANSACTION.value: PostTransactionConfig,
}


def parse_step_config(step_type: str, raw: Optional[dict]) -> BaseStepConfig:
    """Parse a stored config document into the model for ``step_type``."""
    model = STEP_CONFIG_MODELS.get(str(getattr(step_type, "value", step_type)))
    if model is None:
        raise ValidationError(f"Unknown step type '{step_type}'")
    try:
        return model.model_validate(raw or {})
    except ValueError as exc:
        raise ValidationError(f"Invalid {step_type} step config: {exc}") from exc
