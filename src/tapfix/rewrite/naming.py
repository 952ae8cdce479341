from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Set

import libcst as cst

from tapfix.rewrite.static_types import dotted_name


@dataclass
class NamingContext:
    existing_names: Set[str] = field(default_factory=set)
    fallback_prefix: str = "Completion"
    suffix: str = "Listener"


def _camelize(value: str) -> str:
    parts = [p for p in re.split(r"[^a-zA-Z0-9]+", value) if p]
    return "".join(p[:1].upper() + p[1:] for p in parts)


def _normalize_identifier(value: str, fallback: str) -> str:
    cleaned = re.sub(r"[^a-zA-Z0-9_]", "", value)
    if not cleaned:
        return fallback
    if cleaned[0].isdigit():
        return f"{fallback}{cleaned}"
    return cleaned


def callback_anchor(callback: cst.BaseExpression) -> str:
    """The identifier a listener name is derived from, or empty."""
    dotted = dotted_name(callback)
    if dotted is None:
        return ""
    return dotted.rpartition(".")[2]


def suggest_listener_name(anchor: str, context: NamingContext) -> str:
    base = _camelize(anchor) or context.fallback_prefix
    if not base.endswith(context.suffix):
        base = f"{base}{context.suffix}"
    base = _normalize_identifier(base, context.fallback_prefix)

    name = base
    counter = 2
    while name in context.existing_names:
        name = f"{base}{counter}"
        counter += 1
    context.existing_names.add(name)
    return name


def unique_identifier(base: str, taken: Set[str]) -> str:
    name = base
    counter = 1
    while name in taken:
        name = f"{base}_{counter}"
        counter += 1
    return name
