from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping

import libcst as cst
from libcst.metadata import Assignment, ClassScope, CodeRange, Scope

from tapfix.rewrite.model import CallbackKind, CallSite, ElementType, RewriteConfig
from tapfix.rewrite.static_types import TypeResolver

_LITERALS = (
    cst.SimpleString,
    cst.ConcatenatedString,
    cst.FormattedString,
    cst.Integer,
    cst.Float,
    cst.Imaginary,
    cst.List,
    cst.Tuple,
    cst.Dict,
    cst.Set,
    cst.ListComp,
    cst.SetComp,
    cst.DictComp,
    cst.GeneratorExp,
)
_CONSTANT_NAMES = frozenset({"None", "True", "False", "NotImplemented", "Ellipsis"})


@dataclass(frozen=True)
class SkippedCall:
    call: cst.Call
    callback: str
    line: int
    column: int
    reason: str


class CallSiteMatcher(cst.CSTVisitor):
    """Collect calls of the deprecated completion-callback method."""

    def __init__(
        self,
        *,
        module: cst.Module,
        config: RewriteConfig,
        resolver: TypeResolver,
        scopes: Mapping[cst.CSTNode, Scope | None],
        parents: Mapping[cst.CSTNode, cst.CSTNode],
        positions: Mapping[cst.CSTNode, CodeRange],
    ) -> None:
        self.module = module
        self.config = config
        self.resolver = resolver
        self.scopes = scopes
        self.parents = parents
        self.positions = positions
        self.sites: list[CallSite] = []
        self.skipped: list[SkippedCall] = []

    def visit_Call(self, node: cst.Call) -> None:
        func = node.func
        if not isinstance(func, cst.Attribute):
            return
        if func.attr.value != self.config.target_method:
            return
        line, column = self._position(node)
        if len(node.args) != 1 or node.args[0].keyword is not None or node.args[0].star:
            self._skip(node, "", line, column, "expected a single positional callback argument")
            return
        callback = node.args[0].value
        callback_code = self.module.code_for_node(callback)
        if isinstance(callback, cst.Lambda):
            self._skip(node, callback_code, line, column, "lambda callbacks have no statement body")
            return
        if isinstance(callback, _LITERALS) or (
            isinstance(callback, cst.Name) and callback.value in _CONSTANT_NAMES
        ):
            self._skip(node, callback_code, line, column, "callback argument is not callable")
            return
        resolved = self.resolver.expression_type(func.value)
        if resolved is None and self.config.strict_receiver:
            receivers = ", ".join(self.config.receiver_types)
            self._skip(node, callback_code, line, column, f"receiver is not a known {receivers}")
            return
        statement = self._enclosing_statement(node)
        if statement is None:
            self._skip(node, callback_code, line, column, "call is not inside a statement block")
            return
        function = None
        if isinstance(callback, cst.Name):
            function = self._inline_function(callback, node)
        element = resolved.element if resolved is not None else None
        if element is None and function is not None:
            element = self._parameter_element(function)
        if element is None and self.config.element_type_fallback.strip():
            try:
                element = ElementType(
                    cst.parse_expression(self.config.element_type_fallback.strip())
                )
            except cst.ParserSyntaxError:
                element = None
        self.sites.append(
            CallSite(
                call=node,
                receiver=func.value,
                callback=callback,
                kind=CallbackKind.INLINE if function is not None else CallbackKind.OPAQUE,
                statement=statement,
                element=element,
                function=function,
                line=line,
                column=column,
            )
        )

    def ancestors(self, node: cst.CSTNode) -> list[cst.CSTNode]:
        chain = []
        current = self.parents.get(node)
        while current is not None:
            chain.append(current)
            current = self.parents.get(current)
        return chain

    def _position(self, node: cst.CSTNode) -> tuple[int, int]:
        code_range = self.positions.get(node)
        if code_range is None:
            return 0, 0
        return code_range.start.line, code_range.start.column

    def _skip(
        self, node: cst.Call, callback: str, line: int, column: int, reason: str
    ) -> None:
        self.skipped.append(SkippedCall(node, callback, line, column, reason))

    def _enclosing_statement(self, node: cst.CSTNode) -> cst.BaseStatement | None:
        current = node
        parent = self.parents.get(current)
        while parent is not None:
            if isinstance(
                current, (cst.SimpleStatementLine, cst.BaseCompoundStatement)
            ) and isinstance(parent, (cst.IndentedBlock, cst.Module)):
                return current
            current, parent = parent, self.parents.get(parent)
        return None

    def _inline_function(
        self, name: cst.Name, call: cst.Call
    ) -> cst.FunctionDef | None:
        """The local ``def`` behind ``name`` if the call is its only use."""
        scope = self.scopes.get(name)
        if scope is None:
            return None
        accesses = [access for access in scope.accesses[name] if access.node is name]
        if len(accesses) != 1:
            return None
        referents = list(accesses[0].referents)
        if len(referents) != 1:
            return None
        assignment = referents[0]
        if not isinstance(assignment, Assignment):
            return None
        function = assignment.node
        if not isinstance(function, cst.FunctionDef):
            return None
        if isinstance(assignment.scope, ClassScope):
            return None
        if len(assignment.references) != 1:
            return None
        if len(assignment.scope.assignments[assignment.name]) != 1:
            return None
        if function in self.ancestors(call):
            return None
        return function

    def _parameter_element(self, function: cst.FunctionDef) -> ElementType | None:
        positional = [*function.params.posonly_params, *function.params.params]
        if not positional or positional[0].annotation is None:
            return None
        annotation = positional[0].annotation.annotation
        return self.resolver.element_from_annotation(
            annotation, self.scopes.get(annotation)
        )
