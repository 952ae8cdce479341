from __future__ import annotations

from typing import Iterable

import libcst as cst


class _NodeCollector(cst.CSTVisitor):
    def __init__(self, *, names_only: bool) -> None:
        self.names_only = names_only
        self.nodes: set[cst.CSTNode] = set()

    def on_visit(self, node: cst.CSTNode) -> bool:
        if not self.names_only or isinstance(node, cst.Name):
            self.nodes.add(node)
        return True


def subtree_nodes(node: cst.CSTNode) -> frozenset[cst.CSTNode]:
    collector = _NodeCollector(names_only=False)
    node.visit(collector)
    return frozenset(collector.nodes)


def subtree_names(node: cst.CSTNode) -> frozenset[cst.CSTNode]:
    collector = _NodeCollector(names_only=True)
    node.visit(collector)
    return frozenset(collector.nodes)


def identifiers(node: cst.CSTNode) -> set[str]:
    return {name.value for name in subtree_names(node) if isinstance(name, cst.Name)}


class _VariableCollector(cst.CSTVisitor):
    def __init__(self) -> None:
        self.names: set[str] = set()

    def visit_Name(self, node: cst.Name) -> None:
        self.names.add(node.value)

    def visit_Attribute(self, node: cst.Attribute) -> bool:
        node.value.visit(self)
        return False

    def visit_Arg(self, node: cst.Arg) -> bool:
        node.value.visit(self)
        return False


def variable_names(node: cst.CSTNode) -> set[str]:
    """Identifiers that can bind or read a variable.

    Attribute names and keyword argument names are left out.
    """
    collector = _VariableCollector()
    node.visit(collector)
    return collector.names


def split_line(line: cst.SimpleStatementLine) -> list[cst.SimpleStatementLine]:
    """Give every ``;``-separated statement of a line its own line."""
    if len(line.body) < 2:
        return [line]
    lines = []
    last = len(line.body) - 1
    for index, small in enumerate(line.body):
        lines.append(
            cst.SimpleStatementLine(
                body=[small.with_changes(semicolon=cst.MaybeSentinel.DEFAULT)],
                leading_lines=line.leading_lines if index == 0 else (),
                trailing_whitespace=(
                    line.trailing_whitespace
                    if index == last
                    else cst.TrailingWhitespace()
                ),
            )
        )
    return lines


def flatten(statements: Iterable[cst.BaseStatement]) -> list[cst.BaseStatement]:
    flat: list[cst.BaseStatement] = []
    for statement in statements:
        if isinstance(statement, cst.SimpleStatementLine):
            flat.extend(split_line(statement))
        else:
            flat.append(statement)
    return flat


def suite_statements(suite: cst.BaseSuite) -> list[cst.BaseStatement]:
    if isinstance(suite, cst.IndentedBlock):
        return flatten(suite.body)
    if isinstance(suite, cst.SimpleStatementSuite):
        return [
            cst.SimpleStatementLine(
                body=[small.with_changes(semicolon=cst.MaybeSentinel.DEFAULT)]
            )
            for small in suite.body
        ]
    return []


def else_statements(
    orelse: cst.If | cst.Else | None,
) -> list[cst.BaseStatement]:
    if orelse is None:
        return []
    if isinstance(orelse, cst.If):
        # An ``elif`` is the single statement of the else-part.
        return [orelse]
    return suite_statements(orelse.body)


def is_docstring(statement: cst.BaseStatement) -> bool:
    if not isinstance(statement, cst.SimpleStatementLine) or len(statement.body) != 1:
        return False
    expr = statement.body[0]
    return isinstance(expr, cst.Expr) and isinstance(
        expr.value, (cst.SimpleString, cst.ConcatenatedString)
    )


def is_declaration(statement: cst.BaseStatement) -> bool:
    return isinstance(statement, cst.SimpleStatementLine) and all(
        isinstance(small, (cst.Global, cst.Nonlocal)) for small in statement.body
    )


class _ScopeEscapeFinder(cst.CSTVisitor):
    """Find control flow that would leave the callback itself."""

    def __init__(self) -> None:
        self.found: list[str] = []

    def visit_FunctionDef(self, node: cst.FunctionDef) -> bool:
        return False

    def visit_ClassDef(self, node: cst.ClassDef) -> bool:
        return False

    def visit_Lambda(self, node: cst.Lambda) -> bool:
        return False

    def visit_Return(self, node: cst.Return) -> None:
        self.found.append("return")

    def visit_Yield(self, node: cst.Yield) -> None:
        self.found.append("yield")

    def visit_Await(self, node: cst.Await) -> None:
        self.found.append("await")


def escaping_flow(statements: Iterable[cst.BaseStatement]) -> list[str]:
    finder = _ScopeEscapeFinder()
    for statement in statements:
        statement.visit(finder)
    return finder.found
