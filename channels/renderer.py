"""
Step Content Rendering — turns a step template into the text that is sent.

Content generation is a pluggable capability. The engine only depends on
the ContentRenderer protocol:
  - render(step, context) → RenderedContent{subject, body}

PlaceholderRenderer is the default: it substitutes `{{ person.first_name }}`
style placeholders in the step's subject/body templates from a context
built by build_render_context().
"""
from __future__ import annotations

import re
from typing import Any, Optional, Protocol, runtime_checkable

from database.models import ConversationRow, EmailSenderRow, StepTemplateRow
from models.schemas import RenderedContent

_PLACEHOLDER = re.compile(r"\{\{\s*([\w.]+)\s*\}\}")


@runtime_checkable
class ContentRenderer(Protocol):
    async def render(self, step: StepTemplateRow, context: dict[str, Any]) -> RenderedContent:
        ...


def build_render_context(
    conversation: ConversationRow, sender: Optional[EmailSenderRow] = None,
) -> dict[str, Any]:
    """The variables a step template may reference."""
    person = conversation.person
    organization = person.organization if person else None
    sequence = conversation.sequence
    return {
        "person": {
            "id": person.id if person else "",
            "first_name": person.first_name if person else "",
            "last_name": person.last_name if person else "",
            "full_name": person.full_name if person else "",
            "email": person.email if person else "",
            "title": person.title if person else "",
            "company": person.company if person else "",
            **({"metadata": person.metadata_} if person and person.metadata_ else {}),
        },
        "organization": {
            "id": organization.id if organization else "",
            "name": organization.name if organization else "",
        },
        "sequence": {
            "id": sequence.id if sequence else "",
            "name": sequence.name if sequence else "",
            "objective": sequence.objective if sequence else "",
        },
        "sender": {
            "from_name": sender.from_name if sender else "",
            "from_email": sender.from_email if sender else "",
        },
    }


def _lookup(context: dict[str, Any], path: str) -> str:
    value: Any = context
    for part in path.split("."):
        if not isinstance(value, dict) or part not in value:
            return ""
        value = value[part]
    return "" if value is None else str(value)


def fill_placeholders(template: str, context: dict[str, Any]) -> str:
    """Replace every `{{ dotted.path }}`; unknown paths render as empty strings."""
    if not template:
        return ""
    return _PLACEHOLDER.sub(lambda m: _lookup(context, m.group(1)), template)


class PlaceholderRenderer:

    async def render(self, step: StepTemplateRow, context: dict[str, Any]) -> RenderedContent:
        subject = fill_placeholders(step.subject_template, context) if step.subject_template else None
        body = fill_placeholders(step.body_template or "", context)
        return RenderedContent(subject=subject, body=body)
