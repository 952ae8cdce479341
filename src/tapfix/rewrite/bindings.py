from __future__ import annotations

from typing import Mapping

import libcst as cst
from libcst.metadata import Assignment, ComprehensionScope, Scope

from tapfix.exceptions import UnsupportedCallback
from tapfix.rewrite.model import Binding, BindingRole, InlineCallback
from tapfix.rewrite.statements import (
    escaping_flow,
    is_declaration,
    is_docstring,
    suite_statements,
)


def _positional_params(function: cst.FunctionDef) -> tuple[cst.Param, cst.Param]:
    params = function.params
    if (
        params.kwonly_params
        or params.star_kwarg is not None
        or isinstance(params.star_arg, (cst.Param, cst.ParamStar))
    ):
        raise UnsupportedCallback("callback must take exactly two positional parameters")
    positional = [*params.posonly_params, *params.params]
    if len(positional) != 2:
        raise UnsupportedCallback("callback must take exactly two positional parameters")
    if any(param.default is not None for param in positional):
        raise UnsupportedCallback("callback parameters must not have defaults")
    return positional[0], positional[1]


def _enclosing_frame(scope: Scope) -> Scope:
    # Comprehensions run immediately, inside the frame that created them.
    while isinstance(scope, ComprehensionScope):
        scope = scope.parent
    return scope


def _binding(role: BindingRole, param: cst.Param, function_scope: Scope) -> Binding:
    name = param.name.value
    assignments = function_scope.assignments[name]
    if len(assignments) != 1:
        raise UnsupportedCallback(f"callback rebinds '{name}'")
    (assignment,) = assignments
    references: set[cst.CSTNode] = set()
    for access in assignment.references:
        if _enclosing_frame(access.scope) is not function_scope:
            raise UnsupportedCallback(f"'{name}' is captured by a nested scope")
        references.add(access.node)
    return Binding(role=role, name=name, references=frozenset(references))


def _local_nodes(
    function_scope: Scope, parameters: set[str]
) -> dict[str, frozenset[cst.CSTNode]]:
    collected: dict[str, set[cst.CSTNode]] = {}
    for assignment in function_scope.assignments:
        if assignment.name in parameters:
            continue
        nodes = collected.setdefault(assignment.name, set())
        if isinstance(assignment, Assignment):
            nodes.add(assignment.node)
        for access in assignment.references:
            nodes.add(access.node)
    return {name: frozenset(nodes) for name, nodes in collected.items()}


def resolve_inline_callback(
    function: cst.FunctionDef, scopes: Mapping[cst.CSTNode, Scope | None]
) -> InlineCallback:
    """Resolve the value and error bindings of a local callback ``def``.

    Every occurrence of a parameter is resolved once through scope analysis,
    so later stages compare node identity and never names. Raises
    :class:`UnsupportedCallback` for shapes the rewrite leaves alone.
    """
    if function.asynchronous is not None:
        raise UnsupportedCallback("async callbacks are not supported")
    if function.decorators:
        raise UnsupportedCallback("decorated callbacks are not supported")
    value_param, error_param = _positional_params(function)
    function_scope = scopes.get(value_param.name)
    if function_scope is None:
        raise UnsupportedCallback("callback scope could not be resolved")
    value = _binding(BindingRole.VALUE, value_param, function_scope)
    error = _binding(BindingRole.ERROR, error_param, function_scope)

    statements = suite_statements(function.body)
    docstring = None
    if statements and is_docstring(statements[0]):
        docstring = statements.pop(0)
    declarations = tuple(
        statement for statement in statements if is_declaration(statement)
    )
    body = tuple(
        statement for statement in statements if not is_declaration(statement)
    )
    escapes = escaping_flow(body)
    if escapes:
        raise UnsupportedCallback(f"'{escapes[0]}' in the callback body")
    return InlineCallback(
        function=function,
        value=value,
        error=error,
        statements=body,
        declarations=declarations,
        docstring=docstring,
        local_nodes=_local_nodes(function_scope, {value.name, error.name}),
    )
