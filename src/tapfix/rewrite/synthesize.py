from __future__ import annotations

from dataclasses import dataclass, field
from typing import Mapping, Sequence

import libcst as cst

from tapfix.exceptions import SynthesisAborted
from tapfix.rewrite.model import (
    Binding,
    ElementType,
    InlineCallback,
    Partition,
    RewriteConfig,
    Symbol,
    SynthesizedListener,
)
from tapfix.rewrite.naming import unique_identifier
from tapfix.rewrite.statements import identifiers, subtree_names

LIFECYCLE_METHODS = (
    "add_context",
    "on_value",
    "on_error",
    "on_complete",
    "on_cancel",
    "on_final",
)

_INDENT = "    "


@dataclass(frozen=True)
class _Names:
    listener: str
    receiver: str
    value: str
    error: str
    signal: str
    element: str
    element_field: str
    error_type: str
    base: str
    context: str
    signal_type: str
    on_discard: str
    on_error_dropped: str
    threading: str


def _reindent(source: str, indent: str, newline: str) -> str:
    lines = []
    for line in source.splitlines():
        stripped = line.lstrip(" ")
        depth = (len(line) - len(stripped)) // len(_INDENT)
        lines.append(indent * depth + stripped if stripped else "")
    return newline.join(lines) + newline


def _class_source(names: _Names, forwarding: bool) -> str:
    r = names.receiver
    init_params = f"{r}, callback" if forwarding else r
    callback_field = f"        {r}._callback = callback\n" if forwarding else ""
    return (
        f"class {names.listener}({names.base}):\n"
        f"    def __init__({init_params}) -> None:\n"
        f"        super().__init__()\n"
        f"        {r}._lock = {names.threading}.RLock()\n"
        f"        {r}._value: {names.element_field} | None = None\n"
        f"        {r}._error: {names.error_type} | None = None\n"
        f"        {r}._done = False\n"
        f"        {r}._finalized = False\n"
        f"        {r}._context: {names.context} | None = None\n"
        f"{callback_field}"
        f"\n"
        f"    def add_context({r}, original_context: {names.context}) -> {names.context}:\n"
        f"        {r}._context = original_context\n"
        f"        return original_context\n"
        f"\n"
        f"    def on_value({r}, {names.value}: {names.element}) -> None:\n"
        f"        with {r}._lock:\n"
        f"            if {r}._done:\n"
        f"                {names.on_discard}({names.value}, {r}._context)\n"
        f"                return\n"
        f"            {r}._value = {names.value}\n"
        f"\n"
        f"    def on_error({r}, {names.error}: {names.error_type}) -> None:\n"
        f"        with {r}._lock:\n"
        f"            if {r}._done:\n"
        f"                {names.on_error_dropped}({names.error}, {r}._context)\n"
        f"                {r}._error = {names.error}\n"
        f"                return\n"
        f"            {r}._error = {names.error}\n"
        f"            {r}._done = True\n"
        f"\n"
        f"    def on_complete({r}) -> None:\n"
        f"        with {r}._lock:\n"
        f"            {r}._done = True\n"
        f"\n"
        f"    def on_cancel({r}) -> None:\n"
        f"        with {r}._lock:\n"
        f"            if {r}._done:\n"
        f"                return\n"
        f"            {r}._done = True\n"
        f"            if {r}._value is not None:\n"
        f"                {names.on_discard}({r}._value, {r}._context)\n"
        f"\n"
        f"    def on_final({r}, {names.signal}: {names.signal_type}) -> None:\n"
        f"        with {r}._lock:\n"
        f"            if {r}._finalized:\n"
        f"                return\n"
        f"            {r}._finalized = True\n"
        f"            if {names.signal} == {names.signal_type}.CANCEL:\n"
        f"                return\n"
    )


def _extend_locked(
    method: cst.FunctionDef,
    statements: Sequence[cst.BaseStatement],
    declarations: Sequence[cst.BaseStatement] = (),
) -> cst.FunctionDef:
    body = method.body
    if not isinstance(body, cst.IndentedBlock):
        return method
    lock = body.body[-1]
    if not isinstance(lock, cst.With) or not isinstance(lock.body, cst.IndentedBlock):
        return method
    locked = lock.body.with_changes(body=[*lock.body.body, *statements])
    return method.with_changes(
        body=body.with_changes(
            body=[*declarations, *body.body[:-1], lock.with_changes(body=locked)]
        )
    )


@dataclass
class ListenerSynthesizer:
    """Build the listener class that replaces a completion callback.

    The synthesizer only produces the class and the symbols it uses; adding
    the imports is left to the caller.
    """

    config: RewriteConfig = field(default_factory=RewriteConfig)
    parser_config: cst.PartialParserConfig = field(
        default_factory=cst.PartialParserConfig
    )
    postponed_annotations: bool = False
    local_names: Mapping[Symbol, str] = field(default_factory=dict)

    def local_name(self, symbol: Symbol) -> str:
        """The name ``symbol`` is bound to in the module being rewritten."""
        return self.local_names.get(symbol) or symbol.name or symbol.module

    def required_symbols(self, forwarding: bool = False) -> tuple[Symbol, ...]:
        runtime = self.config.runtime
        symbols = [
            Symbol("threading"),
            runtime.symbol("listener"),
            runtime.symbol("signal_type"),
            runtime.symbol("on_discard"),
            runtime.symbol("on_error_dropped"),
            runtime.symbol("context"),
        ]
        if forwarding:
            symbols.append(Symbol("functools"))
        return tuple(symbols)

    def synthesize_inline(
        self,
        name: str,
        callback: InlineCallback,
        partition: Partition,
        element: ElementType | None,
    ) -> SynthesizedListener:
        taken = set()
        for statement in (*callback.statements, *callback.declarations):
            taken |= identifiers(statement)
        names = self._names(
            name,
            element,
            value=callback.value.name,
            error=callback.error.name,
            taken=taken,
        )
        class_def = self._parse(names, forwarding=False)
        value_field = (callback.value, "_value")
        error_field = (callback.error, "_error")
        bodies = {
            "on_value": self._rebind(names, partition.value, [error_field]),
            "on_error": self._rebind(names, partition.error, [value_field]),
            "on_final": self._rebind(
                names, partition.common, [value_field, error_field]
            ),
        }
        class_def = self._splice(class_def, bodies, callback.declarations)
        if callback.docstring is not None:
            class_def = class_def.with_changes(
                body=class_def.body.with_changes(
                    body=[callback.docstring, *class_def.body.body]
                )
            )
        return SynthesizedListener(
            name=name,
            class_def=class_def,
            symbols=self.required_symbols(),
            partition=partition,
        )

    def synthesize_forwarding(
        self, name: str, element: ElementType | None
    ) -> SynthesizedListener:
        names = self._names(name, element, value="value", error="error", taken=set())
        class_def = self._parse(names, forwarding=True)
        forward = self._statement(
            f"{names.receiver}._callback({names.receiver}._value, {names.receiver}._error)\n"
        )
        class_def = self._splice(class_def, {"on_final": [forward]}, ())
        return SynthesizedListener(
            name=name,
            class_def=class_def,
            symbols=self.required_symbols(forwarding=True),
            forwarding=True,
        )

    def _names(
        self,
        name: str,
        element: ElementType | None,
        *,
        value: str,
        error: str,
        taken: set[str],
    ) -> _Names:
        if element is None:
            raise SynthesisAborted("element type of the receiver could not be resolved")
        try:
            error_type = cst.parse_expression(self.config.error_type.strip())
        except cst.ParserSyntaxError as exc:
            raise SynthesisAborted(
                f"error type '{self.config.error_type}' is not an expression: {exc}"
            ) from exc
        runtime = self.config.runtime
        listener = self.local_name(runtime.symbol("listener"))
        element_code = element.code
        base = listener if element.deferred else f"{listener}[{element_code}]"
        taken = taken | {value, error}
        receiver = "self" if "self" not in taken else unique_identifier("listener", taken)
        return _Names(
            listener=name,
            receiver=receiver,
            value=value,
            error=error,
            signal=unique_identifier("signal_type", taken | {receiver}),
            element=self._annotation(element_code, element.deferred),
            element_field=element_code,
            error_type=cst.Module(body=[]).code_for_node(error_type),
            base=base,
            context=self.local_name(runtime.symbol("context")),
            signal_type=self.local_name(runtime.symbol("signal_type")),
            on_discard=self.local_name(runtime.symbol("on_discard")),
            on_error_dropped=self.local_name(runtime.symbol("on_error_dropped")),
            threading=self.local_name(Symbol("threading")),
        )

    def _annotation(self, code: str, deferred: bool) -> str:
        if not deferred or self.postponed_annotations:
            return code
        quote = "'" if '"' in code else '"'
        return f"{quote}{code}{quote}"

    def _rebind(
        self,
        names: _Names,
        statements: Sequence[cst.BaseStatement],
        fields: Sequence[tuple[Binding, str]],
    ) -> list[cst.BaseStatement]:
        """Prefix ``statements`` with assignments for the bindings they read.

        Only bindings that are not parameters of the method are listed in
        ``fields``; each is read back from the field the listener recorded.
        """
        used: frozenset[cst.CSTNode] = frozenset()
        for statement in statements:
            used |= subtree_names(statement)
        prelude = []
        for binding, field_name in fields:
            if binding.referenced_by(used):
                prelude.append(
                    self._statement(f"{binding.name} = {names.receiver}.{field_name}\n")
                )
        return [*prelude, *statements]

    def _indent(self) -> str:
        indent = self.parser_config.default_indent
        return indent if isinstance(indent, str) else _INDENT

    def _newline(self) -> str:
        newline = self.parser_config.default_newline
        return newline if isinstance(newline, str) else "\n"

    def _statement(self, source: str) -> cst.BaseStatement:
        return cst.parse_statement(
            source.replace("\n", self._newline()), config=self.parser_config
        )

    def _parse(self, names: _Names, forwarding: bool) -> cst.ClassDef:
        source = _reindent(
            _class_source(names, forwarding), self._indent(), self._newline()
        )
        class_def = cst.parse_statement(source, config=self.parser_config)
        if not isinstance(class_def, cst.ClassDef):
            raise SynthesisAborted("listener template did not produce a class")
        return class_def

    def _splice(
        self,
        class_def: cst.ClassDef,
        bodies: dict[str, list[cst.BaseStatement]],
        declarations: Sequence[cst.BaseStatement],
    ) -> cst.ClassDef:
        members = []
        for member in class_def.body.body:
            if isinstance(member, cst.FunctionDef) and bodies.get(member.name.value):
                member = _extend_locked(member, bodies[member.name.value], declarations)
            members.append(member)
        return class_def.with_changes(body=class_def.body.with_changes(body=members))
