from __future__ import annotations

from dataclasses import dataclass
import difflib
from pathlib import Path
from typing import Iterable, Iterator, Mapping, Sequence

import libcst as cst
from libcst.metadata import (
    MetadataWrapper,
    ParentNodeProvider,
    PositionProvider,
    Scope,
    ScopeProvider,
)

from tapfix.exceptions import SynthesisAborted, UnsupportedCallback
from tapfix.rewrite.bindings import resolve_inline_callback
from tapfix.rewrite.classify import classify, ensure_locals_confined
from tapfix.rewrite.matcher import CallSiteMatcher
from tapfix.rewrite.model import (
    CallbackKind,
    CallSite,
    ElementType,
    FileRewrite,
    RewriteConfig,
    RewritePlan,
    RewriteRequest,
    SiteReport,
    SiteStatus,
    Symbol,
    SynthesizedListener,
    TextEdit,
)
from tapfix.rewrite.naming import (
    NamingContext,
    callback_anchor,
    suggest_listener_name,
    unique_identifier,
)
from tapfix.rewrite.static_types import TypeResolver, dotted_name
from tapfix.rewrite.statements import identifiers, is_docstring, variable_names
from tapfix.rewrite.synthesize import ListenerSynthesizer


@dataclass(frozen=True)
class _SiteRewrite:
    site: CallSite
    listener: SynthesizedListener


class RewriteEngine:
    def __init__(
        self, config: RewriteConfig | None = None, project_root: Path | None = None
    ) -> None:
        self.config = config or RewriteConfig()
        self.project_root = project_root

    def plan_rewrite(self, request: RewriteRequest) -> RewritePlan:
        plan = RewritePlan()
        paths = [self._resolve(path) for path in request.paths]
        for path in paths:
            if not path.exists():
                plan.errors.append(f"Path not found: {path}")
        for path in iter_python_files(paths, exclude=self.config.exclude):
            try:
                source = path.read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError) as exc:
                plan.errors.append(f"Failed to read {path}: {exc}")
                continue
            try:
                result = self.rewrite_source(source, path=str(path))
            except cst.ParserSyntaxError as exc:
                plan.errors.append(f"LibCST parse failed for {path}: {exc}")
                continue
            plan.files.append(result)
            plan.sites.extend(result.sites)
            plan.warnings.extend(result.warnings)
            if not result.changed:
                continue
            end_line = len(source.splitlines())
            plan.edits.append(
                TextEdit(
                    path=str(path),
                    start=(0, 0),
                    end=(end_line, 0),
                    replacement=result.new_source,
                )
            )
            if request.write:
                try:
                    path.write_text(result.new_source, encoding="utf-8")
                except OSError as exc:
                    plan.errors.append(f"Failed to write {path}: {exc}")
        return plan

    def rewrite_source(self, source: str, path: str = "<string>") -> FileRewrite:
        """Rewrite every matched call site of one module.

        Raises :class:`libcst.ParserSyntaxError` when the source does not parse.
        """
        wrapper = MetadataWrapper(cst.parse_module(source))
        module = wrapper.module
        scopes = wrapper.resolve(ScopeProvider)
        parents = wrapper.resolve(ParentNodeProvider)
        positions = wrapper.resolve(PositionProvider)
        resolver = TypeResolver(
            receiver_types=self.config.receiver_types, scopes=scopes, parents=parents
        )
        matcher = CallSiteMatcher(
            module=module,
            config=self.config,
            resolver=resolver,
            scopes=scopes,
            parents=parents,
            positions=positions,
        )
        module.visit(matcher)

        result = FileRewrite(path=path, source=source, new_source=source)
        reports = [
            SiteReport(
                path=path,
                line=skipped.line,
                column=skipped.column,
                callback=skipped.callback,
                kind="",
                status=SiteStatus.SKIPPED,
                reason=skipped.reason,
            )
            for skipped in matcher.skipped
        ]
        postponed = has_postponed_annotations(module)
        synthesizer = ListenerSynthesizer(
            config=self.config,
            parser_config=module.config_for_parsing,
            postponed_annotations=postponed,
        )
        synthesizer.local_names = import_names(
            module, synthesizer.required_symbols(forwarding=True)
        )
        naming = NamingContext(
            existing_names=identifiers(module) | set(synthesizer.local_names.values()),
            suffix=self.config.listener_suffix,
        )
        rewrites: list[_SiteRewrite] = []
        for site in matcher.sites:
            report, rewrite = self._rewrite_site(
                site,
                path=path,
                module=module,
                scopes=scopes,
                synthesizer=synthesizer,
                naming=naming,
                postponed=postponed,
            )
            if report.status is SiteStatus.ABORTED:
                result.warnings.append(
                    f"{path}:{report.line}: rewrite aborted: {report.reason}"
                )
            reports.append(report)
            if rewrite is not None:
                rewrites.append(rewrite)

        rewrites, reports = _suppress_nested(rewrites, reports, matcher)
        reports.sort(key=lambda report: (report.line, report.column))
        result.sites.extend(reports)
        if not rewrites:
            return result

        transformer = _SiteTransformer(
            rewrites=rewrites,
            replacement_method=self.config.replacement_method,
            functools_name=synthesizer.local_name(Symbol("functools")),
        )
        new_module = module.visit(transformer)
        symbols: list[Symbol] = []
        for rewrite in rewrites:
            symbols.extend(rewrite.listener.symbols)
        new_module = ensure_imports(new_module, symbols, synthesizer.local_names)
        result.new_source = new_module.code
        return result

    def _resolve(self, path: str | Path) -> Path:
        candidate = Path(path)
        if self.project_root is not None and not candidate.is_absolute():
            return self.project_root / candidate
        return candidate

    def _rewrite_site(
        self,
        site: CallSite,
        *,
        path: str,
        module: cst.Module,
        scopes: Mapping[cst.CSTNode, Scope | None],
        synthesizer: ListenerSynthesizer,
        naming: NamingContext,
        postponed: bool,
    ) -> tuple[SiteReport, _SiteRewrite | None]:
        report = SiteReport(
            path=path,
            line=site.line,
            column=site.column,
            callback=module.code_for_node(site.callback),
            kind=site.kind.value,
            status=SiteStatus.REWRITTEN,
        )
        element = site.element
        if element is not None and postponed and not element.deferred:
            element = ElementType(element.expression, deferred=True)
        try:
            if site.kind is CallbackKind.INLINE and site.function is not None:
                callback = resolve_inline_callback(site.function, scopes)
                partition = classify(callback.statements, callback.value, callback.error)
                ensure_locals_confined(partition, callback.local_nodes)
                name = suggest_listener_name(site.function.name.value, naming)
                listener = synthesizer.synthesize_inline(name, callback, partition, element)
            else:
                name = suggest_listener_name(callback_anchor(site.callback), naming)
                listener = synthesizer.synthesize_forwarding(name, element)
        except UnsupportedCallback as exc:
            return _with_status(report, SiteStatus.SKIPPED, exc.reason), None
        except SynthesisAborted as exc:
            return _with_status(report, SiteStatus.ABORTED, exc.reason), None
        buckets = {}
        if listener.partition is not None:
            buckets = {
                bucket: [
                    module.code_for_node(statement).strip()
                    for statement in getattr(listener.partition, bucket)
                ]
                for bucket in ("value", "error", "common")
            }
        report = SiteReport(
            path=report.path,
            line=report.line,
            column=report.column,
            callback=report.callback,
            kind=report.kind,
            status=SiteStatus.REWRITTEN,
            listener=listener.name,
            buckets=buckets,
        )
        return report, _SiteRewrite(site=site, listener=listener)


def _with_status(report: SiteReport, status: SiteStatus, reason: str) -> SiteReport:
    return SiteReport(
        path=report.path,
        line=report.line,
        column=report.column,
        callback=report.callback,
        kind=report.kind,
        status=status,
        reason=reason,
    )


def _suppress_nested(
    rewrites: list[_SiteRewrite],
    reports: list[SiteReport],
    matcher: CallSiteMatcher,
) -> tuple[list[_SiteRewrite], list[SiteReport]]:
    """Drop sites that sit inside a callback being moved in this pass."""
    moved = {
        rewrite.site.function
        for rewrite in rewrites
        if rewrite.site.function is not None
    }
    if not moved:
        return rewrites, reports
    kept: list[_SiteRewrite] = []
    nested: set[tuple[int, int]] = set()
    for rewrite in rewrites:
        if moved.intersection(matcher.ancestors(rewrite.site.call)):
            nested.add((rewrite.site.line, rewrite.site.column))
            continue
        kept.append(rewrite)
    updated = []
    for report in reports:
        if report.status is SiteStatus.REWRITTEN and (report.line, report.column) in nested:
            report = _with_status(
                report,
                SiteStatus.SKIPPED,
                "inside a callback rewritten in this pass; run again",
            )
        updated.append(report)
    return kept, updated


class _SiteTransformer(cst.CSTTransformer):
    def __init__(
        self,
        *,
        rewrites: Sequence[_SiteRewrite],
        replacement_method: str,
        functools_name: str = "functools",
    ) -> None:
        self.replacement_method = replacement_method
        self.functools_name = functools_name
        self.calls: dict[cst.CSTNode, SynthesizedListener] = {}
        self.functions: dict[cst.CSTNode, cst.ClassDef] = {}
        self.inserts: dict[cst.CSTNode, list[cst.ClassDef]] = {}
        for rewrite in rewrites:
            site, listener = rewrite.site, rewrite.listener
            self.calls[site.call] = listener
            if site.kind is CallbackKind.INLINE and site.function is not None:
                self.functions[site.function] = listener.class_def
            else:
                self.inserts.setdefault(site.statement, []).append(listener.class_def)

    def leave_Call(
        self, original_node: cst.Call, updated_node: cst.Call
    ) -> cst.BaseExpression:
        listener = self.calls.get(original_node)
        if listener is None or not isinstance(updated_node.func, cst.Attribute):
            return updated_node
        arg = updated_node.args[0]
        factory: cst.BaseExpression = cst.Name(listener.name)
        if listener.forwarding:
            factory = cst.Call(
                func=cst.Attribute(
                    value=cst.parse_expression(self.functools_name),
                    attr=cst.Name("partial"),
                ),
                args=[cst.Arg(value=cst.Name(listener.name)), cst.Arg(value=arg.value)],
            )
        return updated_node.with_changes(
            func=updated_node.func.with_changes(attr=cst.Name(self.replacement_method)),
            args=[arg.with_changes(value=factory)],
        )

    def leave_FunctionDef(
        self, original_node: cst.FunctionDef, updated_node: cst.FunctionDef
    ) -> cst.BaseStatement:
        class_def = self.functions.get(original_node)
        if class_def is None:
            return updated_node
        return class_def.with_changes(leading_lines=updated_node.leading_lines)

    def on_leave(self, original_node: cst.CSTNode, updated_node: cst.CSTNode):
        updated = super().on_leave(original_node, updated_node)
        classes = self.inserts.get(original_node)
        if classes and isinstance(updated, cst.BaseStatement):
            return cst.FlattenSentinel([*classes, updated])
        return updated


def has_postponed_annotations(module: cst.Module) -> bool:
    for stmt in module.body:
        if not isinstance(stmt, cst.SimpleStatementLine):
            continue
        for item in stmt.body:
            if not isinstance(item, cst.ImportFrom) or item.module is None:
                continue
            if dotted_name(item.module) != "__future__":
                continue
            if isinstance(item.names, cst.ImportStar):
                continue
            if any(dotted_name(alias.name) == "annotations" for alias in item.names):
                return True
    return False


def _is_import(stmt: cst.CSTNode) -> bool:
    if not isinstance(stmt, cst.SimpleStatementLine):
        return False
    return any(isinstance(item, (cst.Import, cst.ImportFrom)) for item in stmt.body)


def _find_import_insert_index(body: list[cst.BaseStatement]) -> int:
    insert_idx = 0
    if body and is_docstring(body[0]):
        insert_idx = 1
    while insert_idx < len(body) and _is_import(body[insert_idx]):
        insert_idx += 1
    return insert_idx


def _existing_imports(body: Iterable[cst.BaseStatement]) -> dict[Symbol, str]:
    """Map every symbol imported at module level to its local name."""
    existing: dict[Symbol, str] = {}
    for stmt in body:
        if not isinstance(stmt, cst.SimpleStatementLine):
            continue
        for item in stmt.body:
            if isinstance(item, cst.Import):
                for alias in item.names:
                    module = dotted_name(alias.name)
                    if not module:
                        continue
                    local = module
                    if alias.asname is not None:
                        local = dotted_name(alias.asname.name) or module
                    existing.setdefault(Symbol(module), local)
            elif isinstance(item, cst.ImportFrom) and not item.relative:
                module = dotted_name(item.module)
                if module is None or isinstance(item.names, cst.ImportStar):
                    continue
                for alias in item.names:
                    name = dotted_name(alias.name)
                    if not name:
                        continue
                    local = name
                    if alias.asname is not None:
                        local = dotted_name(alias.asname.name) or name
                    existing.setdefault(Symbol(module, name), local)
    return existing


def import_names(module: cst.Module, symbols: Iterable[Symbol]) -> dict[Symbol, str]:
    """Choose the local name each symbol is referenced by after the rewrite.

    A symbol the module already imports keeps its binding. A missing one is
    imported under an alias when its name is already used in the module.
    """
    existing = _existing_imports(module.body)
    taken = variable_names(module)
    names: dict[Symbol, str] = {}
    for symbol in symbols:
        if symbol in names:
            continue
        if symbol in existing:
            names[symbol] = existing[symbol]
            continue
        local = symbol.name or symbol.module
        head = local.partition(".")[0]
        if head in taken:
            local = unique_identifier(local.replace(".", "_"), taken)
            head = local
        taken.add(head)
        names[symbol] = local
    return names


def _alias(name: str, local: str) -> cst.ImportAlias:
    if local == name:
        return cst.ImportAlias(name=cst.parse_expression(name))
    return cst.ImportAlias(
        name=cst.parse_expression(name), asname=cst.AsName(name=cst.Name(local))
    )


def ensure_imports(
    module: cst.Module,
    symbols: Iterable[Symbol],
    local_names: Mapping[Symbol, str] | None = None,
) -> cst.Module:
    """Add the imports the synthesized listeners need, skipping present ones.

    ``local_names`` gives the alias for a symbol whose own name is taken.
    """
    body = list(module.body)
    existing = _existing_imports(body)
    local_names = local_names or {}
    plain: dict[str, str] = {}
    from_names: dict[str, dict[str, str]] = {}
    for symbol in symbols:
        if symbol in existing:
            continue
        local = local_names.get(symbol) or symbol.name or symbol.module
        if not symbol.name:
            plain[symbol.module] = local
        else:
            from_names.setdefault(symbol.module, {})[symbol.name] = local
    if not plain and not from_names:
        return module
    new_lines: list[cst.BaseStatement] = [
        cst.SimpleStatementLine([cst.Import(names=[_alias(name, plain[name])])])
        for name in sorted(plain)
    ]
    for module_name in sorted(from_names):
        imported = from_names[module_name]
        new_lines.append(
            cst.SimpleStatementLine(
                [
                    cst.ImportFrom(
                        module=cst.parse_expression(module_name),
                        names=[_alias(name, imported[name]) for name in sorted(imported)],
                    )
                ]
            )
        )
    insert_idx = _find_import_insert_index(body)
    body[insert_idx:insert_idx] = new_lines
    return module.with_changes(body=body)


def iter_python_files(
    paths: Iterable[Path], *, exclude: Sequence[str] = ()
) -> Iterator[Path]:
    excluded = set(exclude)
    seen: set[Path] = set()
    for path in paths:
        if path.is_file():
            candidates: Iterable[Path] = [path] if path.suffix == ".py" else []
        elif path.is_dir():
            candidates = sorted(path.rglob("*.py"))
        else:
            continue
        for candidate in candidates:
            relative = candidate.relative_to(path) if path.is_dir() else Path(candidate.name)
            if excluded.intersection(relative.parts):
                continue
            if candidate in seen:
                continue
            seen.add(candidate)
            yield candidate


def render_diff(result: FileRewrite) -> str:
    return "".join(
        difflib.unified_diff(
            result.source.splitlines(keepends=True),
            result.new_source.splitlines(keepends=True),
            fromfile=f"a/{result.path}",
            tofile=f"b/{result.path}",
        )
    )
