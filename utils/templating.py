"""
`{{variable}}` substitution for outbound flow messages.

Unknown variables render as empty strings; keys are trimmed so
"{{ nome }}" and "{{nome}}" are the same variable.
"""
from __future__ import annotations

import re
from typing import Any

from utils.conditions import normalize_var_key

_PLACEHOLDER = re.compile(r"\{\{\s*([^}]+?)\s*\}\}")


def render(text: str, variables: dict[str, Any]) -> str:
    if not text:
        return ""

    def replace(match: re.Match) -> str:
        value = variables.get(normalize_var_key(match.group(1)))
        return "" if value is None else str(value)

    return _PLACEHOLDER.sub(replace, text)


def contact_variables(contact, extra: dict[str, Any] = None) -> dict[str, Any]:
    """Variables every session starts with."""
    variables = {
        "nome": contact.name or "",
        "telefone": contact.phone,
        "contactName": contact.name or contact.phone,
    }
    variables.update(extra or {})
    return variables
