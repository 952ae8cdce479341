from __future__ import annotations

from typing import Collection, Mapping

import libcst as cst
from libcst.metadata import Assignment, Scope

from tapfix.rewrite.model import ElementType, ResolvedType

# Operators that return a Mono of the same element type as their receiver.
ELEMENT_PRESERVING_OPERATORS = frozenset(
    {
        "cache",
        "cancel_on",
        "checkpoint",
        "default_if_empty",
        "delay_element",
        "delay_subscription",
        "do_first",
        "do_finally",
        "do_on_cancel",
        "do_on_error",
        "do_on_next",
        "do_on_request",
        "do_on_subscribe",
        "do_on_success",
        "do_on_terminate",
        "filter",
        "hide",
        "log",
        "metrics",
        "name",
        "on_error_continue",
        "on_error_map",
        "on_error_resume",
        "on_error_return",
        "or",
        "publish_on",
        "repeat_when_empty",
        "retry",
        "retry_when",
        "share",
        "single",
        "subscribe_on",
        "switch_if_empty",
        "tag",
        "tap",
        "timeout",
    }
)

# Operators that return a Mono whose element type cannot be read off the call.
ELEMENT_CHANGING_OPERATORS = frozenset(
    {
        "and_",
        "cast",
        "elapsed",
        "flat_map",
        "handle",
        "map",
        "map_not_null",
        "materialize",
        "of_type",
        "then",
        "then_return",
        "timed",
        "timestamp",
        "zip_when",
        "zip_with",
    }
)

_OPTIONAL_NAMES = frozenset({"typing.Optional", "typing_extensions.Optional"})
_UNION_NAMES = frozenset({"typing.Union", "typing_extensions.Union"})
_MAX_DEPTH = 8


def dotted_name(expr: cst.BaseExpression | None) -> str | None:
    if expr is None:
        return None
    if isinstance(expr, cst.Name):
        return expr.value
    if isinstance(expr, cst.Attribute):
        parts = []
        current: cst.BaseExpression | None = expr
        while isinstance(current, cst.Attribute):
            parts.append(current.attr.value)
            current = current.value
        if isinstance(current, cst.Name):
            parts.append(current.value)
            return ".".join(reversed(parts))
    return None


def is_none(expr: cst.BaseExpression) -> bool:
    return isinstance(expr, cst.Name) and expr.value == "None"


def qualified_names(expr: cst.BaseExpression, scope: Scope | None) -> set[str]:
    dotted = dotted_name(expr)
    if dotted is None or scope is None:
        return set()
    return {qualified.name for qualified in scope.get_qualified_names_for(dotted)}


def parse_string_annotation(node: cst.BaseExpression) -> cst.BaseExpression | None:
    if not isinstance(node, cst.SimpleString):
        return None
    value = node.evaluated_value
    if not isinstance(value, str):
        return None
    try:
        return cst.parse_expression(value.strip())
    except cst.ParserSyntaxError:
        return None


def strip_optional(expr: cst.BaseExpression, scope: Scope | None) -> cst.BaseExpression:
    """Reduce ``X | None``, ``Optional[X]`` and ``Union[X, None]`` to ``X``."""
    if isinstance(expr, cst.BinaryOperation) and isinstance(expr.operator, cst.BitOr):
        if is_none(expr.right):
            return strip_optional(expr.left, scope)
        if is_none(expr.left):
            return strip_optional(expr.right, scope)
        return expr
    if isinstance(expr, cst.Subscript):
        names = qualified_names(expr.value, scope)
        elements = _subscript_values(expr)
        if names & _OPTIONAL_NAMES and len(elements) == 1:
            return strip_optional(elements[0], scope)
        if names & _UNION_NAMES and len(elements) == 2:
            left, right = elements
            if is_none(right):
                return strip_optional(left, scope)
            if is_none(left):
                return strip_optional(right, scope)
    return expr


def _subscript_values(expr: cst.Subscript) -> list[cst.BaseExpression]:
    values: list[cst.BaseExpression] = []
    for element in expr.slice:
        if not isinstance(element.slice, cst.Index):
            return []
        values.append(element.slice.value)
    return values


class TypeResolver:
    """Static typing of receiver expressions, just deep enough to find a Mono.

    Types come from annotations (parameters and annotated assignments),
    from assignments of other typed expressions, from factory calls on the
    receiver class, and from operator calls on a typed receiver.
    """

    def __init__(
        self,
        *,
        receiver_types: Collection[str],
        scopes: Mapping[cst.CSTNode, Scope | None],
        parents: Mapping[cst.CSTNode, cst.CSTNode],
    ) -> None:
        self.receiver_types = frozenset(receiver_types)
        self.scopes = scopes
        self.parents = parents

    def expression_type(
        self, expr: cst.BaseExpression, depth: int = 0
    ) -> ResolvedType | None:
        if depth > _MAX_DEPTH:
            return None
        if isinstance(expr, cst.Name):
            return self._name_type(expr, depth)
        if isinstance(expr, cst.Call) and isinstance(expr.func, cst.Attribute):
            return self._call_type(expr, expr.func, depth)
        return None

    def annotation_type(
        self,
        annotation: cst.BaseExpression,
        scope: Scope | None,
        deferred: bool = False,
    ) -> ResolvedType | None:
        parsed = parse_string_annotation(annotation)
        if parsed is not None:
            return self.annotation_type(parsed, scope, deferred=True)
        annotation = strip_optional(annotation, scope)
        if isinstance(annotation, cst.Subscript):
            qualified = self._receiver_name(annotation.value, scope)
            if qualified is None:
                return None
            elements = _subscript_values(annotation)
            if len(elements) != 1:
                return ResolvedType(qualified)
            return ResolvedType(qualified, ElementType(elements[0], deferred))
        qualified = self._receiver_name(annotation, scope)
        if qualified is None:
            return None
        return ResolvedType(qualified)

    def element_from_annotation(
        self, annotation: cst.BaseExpression, scope: Scope | None
    ) -> ElementType:
        parsed = parse_string_annotation(annotation)
        if parsed is not None:
            return ElementType(strip_optional(parsed, scope), deferred=True)
        return ElementType(strip_optional(annotation, scope))

    def _receiver_name(
        self, expr: cst.BaseExpression, scope: Scope | None
    ) -> str | None:
        matches = qualified_names(expr, scope) & self.receiver_types
        if not matches:
            return None
        return sorted(matches)[0]

    def _scope_for(self, node: cst.CSTNode) -> Scope | None:
        return self.scopes.get(node)

    def _name_type(self, name: cst.Name, depth: int) -> ResolvedType | None:
        scope = self._scope_for(name)
        if scope is None:
            return None
        referents = [
            referent
            for access in scope.accesses[name]
            if access.node is name
            for referent in access.referents
        ]
        resolved: list[ResolvedType] = []
        for referent in referents:
            if not isinstance(referent, Assignment):
                continue
            result = self._assignment_type(referent, depth)
            if result is not None:
                resolved.append(result)
        if not resolved:
            return None
        qualified = {item.qualified_name for item in resolved}
        if len(qualified) != 1:
            return None
        for item in resolved:
            if item.element is not None:
                return item
        return resolved[0]

    def _assignment_type(
        self, assignment: Assignment, depth: int
    ) -> ResolvedType | None:
        node = assignment.node
        if isinstance(node, cst.Param):
            if node.annotation is None:
                return None
            annotation = node.annotation.annotation
            return self.annotation_type(annotation, self._scope_for(annotation))
        if not isinstance(node, cst.Name):
            return None
        parent = self.parents.get(node)
        if isinstance(parent, cst.AnnAssign) and parent.target is node:
            annotation = parent.annotation.annotation
            return self.annotation_type(annotation, self._scope_for(annotation))
        if isinstance(parent, cst.AssignTarget) and parent.target is node:
            statement = self.parents.get(parent)
            if isinstance(statement, cst.Assign):
                return self.expression_type(statement.value, depth + 1)
        return None

    def _call_type(
        self, call: cst.Call, func: cst.Attribute, depth: int
    ) -> ResolvedType | None:
        factory = self._receiver_name(func.value, self._scope_for(func.value))
        if factory is not None:
            return ResolvedType(factory)
        receiver = self.expression_type(func.value, depth + 1)
        if receiver is None:
            return None
        operator = func.attr.value
        if operator in ELEMENT_PRESERVING_OPERATORS:
            return receiver
        if operator in ELEMENT_CHANGING_OPERATORS:
            return ResolvedType(receiver.qualified_name)
        return None
