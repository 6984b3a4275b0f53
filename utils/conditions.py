"""
Condition evaluator for `condition` flow nodes.

Evaluates variable and tag conditions against session variables and the
contact's tags. Comparisons are case-insensitive, trimmed and
accent-insensitive, so "Sim", " sim " and "SÍM" all match "sim".
"""
from __future__ import annotations

import unicodedata
from typing import Any, Callable


def normalize_comparable(value: Any) -> str:
    """Lowercase, trim and strip combining accents."""
    text = "" if value is None else str(value)
    decomposed = unicodedata.normalize("NFD", text.strip().lower())
    return "".join(c for c in decomposed if not unicodedata.combining(c))


def normalize_var_key(raw: Any) -> str:
    """Builder variable names may arrive wrapped, e.g. "{{resposta}}"."""
    return str(raw or "").replace("{{", "").replace("}}", "").strip()


def _to_float(value: str) -> float:
    try:
        return float(value.replace(",", "."))
    except ValueError:
        return float("nan")


def _is_blank(raw: str) -> bool:
    return raw == "" or raw == "undefined"


# Each operator receives (normalized a, normalized b, raw a, raw b)
OPERATORS: dict[str, Callable[[str, str, str, str], bool]] = {
    "equals": lambda a, b, ra, rb: a == b,
    "not_equals": lambda a, b, ra, rb: a != b,
    "contains": lambda a, b, ra, rb: b in a,
    "not_contains": lambda a, b, ra, rb: b not in a,
    "startsWith": lambda a, b, ra, rb: a.startswith(b),
    "endsWith": lambda a, b, ra, rb: a.endswith(b),
    "greater": lambda a, b, ra, rb: _to_float(ra) > _to_float(rb),
    "less": lambda a, b, ra, rb: _to_float(ra) < _to_float(rb),
    "exists": lambda a, b, ra, rb: not _is_blank(ra),
    "not_exists": lambda a, b, ra, rb: _is_blank(ra),
}


def evaluate_condition(condition: dict[str, Any], variables: dict[str, Any],
                       tags: list[str]) -> bool:
    """Evaluate a single condition dict from a node's `conditions` list."""
    if condition.get("type") == "tag":
        wanted = normalize_comparable(condition.get("tagName", ""))
        has_tag = any(normalize_comparable(t) == wanted for t in tags)
        return has_tag if condition.get("tagCondition", "has") == "has" else not has_tag

    key = normalize_var_key(condition.get("variable", ""))
    raw_value = variables.get(key)
    ra = "" if raw_value is None else str(raw_value).strip()
    rb = str(condition.get("value") or "").strip()
    fn = OPERATORS.get(condition.get("operator") or "equals", OPERATORS["equals"])
    return fn(normalize_comparable(ra), normalize_comparable(rb), ra, rb)


def node_conditions(data: dict[str, Any]) -> list[dict[str, Any]]:
    """Conditions of a node, including the single-condition legacy layout."""
    conditions = list(data.get("conditions") or [])
    if not conditions and data.get("variable"):
        conditions.append({
            "type": "variable",
            "variable": data["variable"],
            "operator": data.get("operator") or "equals",
            "value": data.get("value") or "",
        })
    return conditions


def evaluate_conditions(data: dict[str, Any], variables: dict[str, Any],
                        tags: list[str]) -> bool:
    """
    Combine a node's conditions with its `logicOperator` ("and" default,
    otherwise "or"). A node without conditions is false.
    """
    conditions = node_conditions(data)
    if not conditions:
        return False
    results = (evaluate_condition(c, variables, tags) for c in conditions)
    if (data.get("logicOperator") or "and") == "and":
        return all(results)
    return any(results)
