from __future__ import annotations

from typing import Mapping

from .errors import ValidationError
from .models import LabelSelector, LabelSelectorRequirement


OPERATORS = ("In", "NotIn", "Exists", "DoesNotExist")


def is_empty(selector: LabelSelector | None) -> bool:
    return selector is None or (not selector.match_labels and not selector.match_expressions)


def _requirement_matches(req: LabelSelectorRequirement, labels: Mapping[str, str]) -> bool:
    if req.operator == "In":
        return req.key in labels and labels[req.key] in req.values
    if req.operator == "NotIn":
        return req.key not in labels or labels[req.key] not in req.values
    if req.operator == "Exists":
        return req.key in labels
    if req.operator == "DoesNotExist":
        return req.key not in labels
    # Unknown operators never match; validate_selector reports them.
    return False


def matches(selector: LabelSelector | None, labels: Mapping[str, str] | None) -> bool:
    """Does a label set satisfy a selector.

    An empty or missing selector is not a wildcard: it only matches an empty
    label set, so a set without a selector never sweeps up unrelated units.
    """
    labels = labels or {}
    if selector is None or is_empty(selector):
        return not labels
    for k, v in selector.match_labels.items():
        if labels.get(k) != v:
            return False
    return all(_requirement_matches(req, labels) for req in selector.match_expressions)


def validate_selector(selector: LabelSelector | None) -> None:
    if selector is None or is_empty(selector):
        raise ValidationError("selector is empty; it would not select any units")
    for k in selector.match_labels:
        if not k:
            raise ValidationError("selector match_labels contains an empty key")
    for req in selector.match_expressions:
        if not req.key:
            raise ValidationError("selector requirement has an empty key")
        if req.operator not in OPERATORS:
            raise ValidationError(f"selector requirement {req.key!r}: unknown operator {req.operator!r}")
        if req.operator in ("In", "NotIn") and not req.values:
            raise ValidationError(f"selector requirement {req.key!r}: {req.operator} needs at least one value")
        if req.operator in ("Exists", "DoesNotExist") and req.values:
            raise ValidationError(f"selector requirement {req.key!r}: {req.operator} takes no values")


def selector_string(selector: LabelSelector | None) -> str:
    """Render a selector in the usual ``k=v,k in (a,b),!k`` text form."""
    if selector is None:
        return ""
    parts = [f"{k}={v}" for k, v in sorted(selector.match_labels.items())]
    for req in selector.match_expressions:
        if req.operator == "In":
            parts.append(f"{req.key} in ({','.join(sorted(req.values))})")
        elif req.operator == "NotIn":
            parts.append(f"{req.key} notin ({','.join(sorted(req.values))})")
        elif req.operator == "Exists":
            parts.append(req.key)
        elif req.operator == "DoesNotExist":
            parts.append(f"!{req.key}")
    return ",".join(parts)
