"""Template resolution against an execution context.

Templates are strings containing ``{{ dotted.path }}`` placeholders,
bare ``step_<order>.field`` references, or JSON trees (dicts/lists)
whose string leaves are templates.

Lookup order for a path without a scope prefix:

1. the current step's submitted input
2. prior steps' recorded results, addressed by step id or alias
   (``step_<order>``, ``config.dataKey`` or label)
3. the execution's initial variables

A ``input.``, ``steps.``/``context.`` or ``variables.`` prefix restricts
the lookup to one scope. A path that matches nothing raises
``UnresolvedReference``; it is never replaced by an empty string.

Usage:
    ctx = TemplateContext(input={"amount": 500})
    resolve(ctx, "{{ amount }}")            # 500 (type preserved)
    resolve(ctx, "Pay {{ amount }} MWK")    # "Pay 500 MWK"
"""

import json
import re
from dataclasses import dataclass, field
from typing import Any, Optional

from core.exceptions import UnresolvedReference
from core.utils import get_path

PLACEHOLDER_RE = re.compile(r"\{\{\s*([^{}]+?)\s*\}\}")
WHOLE_PLACEHOLDER_RE = re.compile(r"^\s*\{\{\s*([^{}]+?)\s*\}\}\s*$")
BARE_STEP_REFERENCE_RE = re.compile(r"^step_\d+(\.[\w\-]+)+$")

_INPUT_SCOPES = ("input",)
_STEP_SCOPES = ("steps", "context")
_VARIABLE_SCOPES = ("variables",)


def step_view(record: dict) -> dict:
    """Flatten a recorded step result for template lookups.

    Submitted input fields and adapter result fields are merged (result
    wins) so ``{{ step_0.amount }}`` works for both form and server steps.
    The raw ``input``, ``result`` and ``success`` keys stay addressable.
    """
    view: dict = {}
    step_input = record.get("input")
    step_result = record.get("result")
    if isinstance(step_input, dict):
        view.update(step_input)
    if isinstance(step_result, dict):
        view.update(step_result)
    view["input"] = step_input
    view["result"] = step_result
    view["success"] = record.get("success")
    return view


@dataclass
class TemplateContext:
    """Everything a template may reference."""

    input: dict = field(default_factory=dict)
    steps: dict[str, dict] = field(default_factory=dict)
    variables: dict = field(default_factory=dict)

    @classmethod
    def from_execution(
        cls,
        context: dict,
        aliases: dict,
        variables: Optional[dict] = None,
        step_input: Optional[dict] = None,
    ) -> "TemplateContext":
        """Build a lookup context from an execution's persisted state.

        Args:
            context: step id -> recorded step result
            aliases: alias -> step id
            variables: Initial execution variables
            step_input: Input submitted for the current step
        """
        steps = {step_id: step_view(record) for step_id, record in context.items()}
        for alias, step_id in aliases.items():
            if step_id in steps and alias not in steps:
                steps[alias] = steps[step_id]
        return cls(input=dict(step_input or {}), steps=steps, variables=dict(variables or {}))


class TemplateResolver:
    """Resolves placeholders in strings and JSON trees."""

    def __init__(self, context: TemplateContext):
        self.context = context

    def lookup(self, path: str, template: Optional[str] = None) -> Any:
        """Resolve a single dotted path, raising ``UnresolvedReference``."""
        path = path.strip()
        if not path:
            raise UnresolvedReference(path, template)

        head, _, rest = path.partition(".")
        if head in _INPUT_SCOPES and rest:
            scopes = [self.context.input]
            path = rest
        elif head in _STEP_SCOPES and rest:
            scopes = [self.context.steps]
            path = rest
        elif head in _VARIABLE_SCOPES and rest:
            scopes = [self.context.variables]
            path = rest
        else:
            scopes = [self.context.input, self.context.steps, self.context.variables]

        for scope in scopes:
            try:
                return get_path(scope, path)
            except KeyError:
                continue
        raise UnresolvedReference(path, template)

    def resolve(self, template: Any) -> Any:
        """Resolve ``template`` recursively.

        A string that is exactly one placeholder (or one bare step
        reference) yields the referenced value unchanged; otherwise each
        placeholder is replaced by its string form.
        """
        if isinstance(template, dict):
            return {key: self.resolve(value) for key, value in template.items()}
        if isinstance(template, list):
            return [self.resolve(item) for item in template]
        if not isinstance(template, str):
            return template

        whole = WHOLE_PLACEHOLDER_RE.match(template)
        if whole:
            return self.lookup(whole.group(1), template)
        if BARE_STEP_REFERENCE_RE.match(template):
            return self.lookup(template, template)
        if "{{" not in template:
            return template

        return PLACEHOLDER_RE.sub(
            lambda m: _stringify(self.lookup(m.group(1), template)), template
        )

    def resolve_reference(self, reference: str) -> Any:
        """Resolve a parameter-mapping source.

        Mapping values are either templates (``"{{ step_0.amount }}"``) or
        plain dotted paths (``"step_0.amount"``).
        """
        if "{{" in reference:
            return self.resolve(reference)
        return self.lookup(reference, reference)

    def preview(self, template: Any) -> tuple[Any, Optional[str]]:
        """Resolve without raising; returns ``(value, error)``."""
        try:
            return self.resolve(template), None
        except UnresolvedReference as exc:
            return None, exc.message


def _stringify(value: Any) -> str:
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def resolve(context: TemplateContext, template: Any) -> Any:
    """Resolve ``template`` against ``context`` (raises ``UnresolvedReference``)."""
    return TemplateResolver(context).resolve(template)


def preview(context: TemplateContext, template: Any) -> tuple[Any, Optional[str]]:
    """Speculative resolution for previews; never raises."""
    return TemplateResolver(context).preview(template)
