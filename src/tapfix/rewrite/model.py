from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Mapping, Tuple

import libcst as cst

Position = Tuple[int, int]


@dataclass(frozen=True)
class TextEdit:
    path: str
    start: Position
    end: Position
    replacement: str


@dataclass(frozen=True)
class Symbol:
    """An importable name; ``name`` is empty for a plain ``import module``."""

    module: str
    name: str = ""

    @classmethod
    def from_dotted(cls, dotted: str) -> "Symbol":
        module, _, name = dotted.strip().rpartition(".")
        if not module:
            return cls(module=name)
        return cls(module=module, name=name)


@dataclass(frozen=True)
class RuntimeSymbols:
    listener: str = "reactor.core.observability.DefaultSignalListener"
    signal_type: str = "reactor.core.publisher.SignalType"
    on_discard: str = "reactor.core.publisher.operators.on_discard"
    on_error_dropped: str = "reactor.core.publisher.operators.on_error_dropped"
    context: str = "reactor.util.context.Context"

    def symbol(self, attribute: str) -> Symbol:
        return Symbol.from_dotted(getattr(self, attribute))

    def local_name(self, attribute: str) -> str:
        symbol = self.symbol(attribute)
        return symbol.name or symbol.module


@dataclass(frozen=True)
class RewriteConfig:
    target_method: str = "do_after_success_or_error"
    replacement_method: str = "tap"
    receiver_types: Tuple[str, ...] = ("reactor.core.publisher.Mono",)
    strict_receiver: bool = True
    error_type: str = "BaseException"
    element_type_fallback: str = ""
    listener_suffix: str = "Listener"
    exclude: Tuple[str, ...] = ()
    runtime: RuntimeSymbols = field(default_factory=RuntimeSymbols)


class BindingRole(Enum):
    VALUE = "value"
    ERROR = "error"


class Bucket(Enum):
    VALUE = "value"
    ERROR = "error"
    COMMON = "common"


@dataclass(frozen=True, eq=False)
class Binding:
    role: BindingRole
    name: str
    references: frozenset[cst.CSTNode]

    def referenced_by(self, nodes: frozenset[cst.CSTNode]) -> bool:
        return not self.references.isdisjoint(nodes)


@dataclass(frozen=True)
class Partition:
    value: Tuple[cst.BaseStatement, ...] = ()
    error: Tuple[cst.BaseStatement, ...] = ()
    common: Tuple[cst.BaseStatement, ...] = ()

    def bucket(self, bucket: Bucket) -> Tuple[cst.BaseStatement, ...]:
        return getattr(self, bucket.value)


@dataclass(frozen=True)
class ElementType:
    """The generic argument of the receiver.

    ``deferred`` marks a type that only exists for the type checker (written
    as a string annotation), so it must not be evaluated at runtime.
    """

    expression: cst.BaseExpression
    deferred: bool = False

    @property
    def code(self) -> str:
        return cst.Module(body=[]).code_for_node(self.expression)


@dataclass(frozen=True)
class ResolvedType:
    qualified_name: str
    element: ElementType | None = None


class CallbackKind(Enum):
    INLINE = "inline"
    OPAQUE = "opaque"


@dataclass(frozen=True)
class CallSite:
    call: cst.Call
    receiver: cst.BaseExpression
    callback: cst.BaseExpression
    kind: CallbackKind
    statement: cst.BaseStatement
    element: ElementType | None = None
    function: cst.FunctionDef | None = None
    line: int = 0
    column: int = 0


@dataclass(frozen=True)
class InlineCallback:
    function: cst.FunctionDef
    value: Binding
    error: Binding
    statements: Tuple[cst.BaseStatement, ...]
    declarations: Tuple[cst.SimpleStatementLine, ...] = ()
    docstring: cst.SimpleStatementLine | None = None
    local_nodes: Mapping[str, frozenset[cst.CSTNode]] = field(default_factory=dict)


@dataclass(frozen=True)
class SynthesizedListener:
    name: str
    class_def: cst.ClassDef
    symbols: Tuple[Symbol, ...]
    forwarding: bool = False
    partition: Partition | None = None


class SiteStatus(Enum):
    REWRITTEN = "rewritten"
    SKIPPED = "skipped"
    ABORTED = "aborted"


@dataclass(frozen=True)
class SiteReport:
    path: str
    line: int
    column: int
    callback: str
    kind: str
    status: SiteStatus
    reason: str = ""
    listener: str = ""
    buckets: Dict[str, List[str]] = field(default_factory=dict)


@dataclass(frozen=True)
class RewriteRequest:
    paths: List[str]
    write: bool = False


@dataclass
class FileRewrite:
    path: str
    source: str
    new_source: str
    sites: List[SiteReport] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return self.new_source != self.source


@dataclass
class RewritePlan:
    files: List[FileRewrite] = field(default_factory=list)
    edits: List[TextEdit] = field(default_factory=list)
    sites: List[SiteReport] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
