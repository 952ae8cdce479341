"""Partition a completion callback's statements into lifecycle buckets.

The deprecated callback receives ``(value, error)`` and its body mixes the
success path, the failure path and logic common to both. The listener that
replaces it has separate methods for each, so every top-level statement is
assigned to exactly one bucket:

* a *null guard* (``if error is not None: ... else: ...`` and its variants)
  is replaced by its branches, each branch defaulting to the bucket of the
  binding known to be set in it;
* any other statement is classified by the bindings it references.

Classification is a single stable pass: statements keep their source order
within a bucket.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Sequence

import libcst as cst

from tapfix.exceptions import UnsupportedCallback
from tapfix.rewrite.model import Binding, BindingRole, Bucket, Partition
from tapfix.rewrite.statements import else_statements, subtree_names, subtree_nodes, suite_statements
from tapfix.rewrite.static_types import is_none

_NOT_EQUAL = (cst.IsNot, cst.NotEqual)
_EQUAL = (cst.Is, cst.Equal)


@dataclass(frozen=True)
class NullGuard:
    node: cst.If
    binding: Binding
    then_is_non_null: bool

    @property
    def then_statements(self) -> list[cst.BaseStatement]:
        return suite_statements(self.node.body)

    @property
    def else_statements(self) -> list[cst.BaseStatement]:
        return else_statements(self.node.orelse)


def bucket_for(binding: Binding) -> Bucket:
    if binding.role is BindingRole.VALUE:
        return Bucket.VALUE
    return Bucket.ERROR


def null_guard(
    statement: cst.BaseStatement, value: Binding, error: Binding
) -> NullGuard | None:
    if not isinstance(statement, cst.If):
        return None
    test = statement.test
    if not isinstance(test, cst.Comparison) or len(test.comparisons) != 1:
        return None
    target = test.comparisons[0]
    operator = target.operator
    if isinstance(operator, _NOT_EQUAL):
        then_is_non_null = True
    elif isinstance(operator, _EQUAL):
        then_is_non_null = False
    else:
        return None
    left, right = test.left, target.comparator
    if is_none(right):
        operand = left
    elif is_none(left):
        operand = right
    else:
        return None
    for binding in (value, error):
        if operand in binding.references:
            return NullGuard(statement, binding, then_is_non_null)
    return None


def statement_bucket(
    statement: cst.CSTNode, value: Binding, error: Binding
) -> Bucket:
    names = subtree_names(statement)
    uses_value = value.referenced_by(names)
    uses_error = error.referenced_by(names)
    if uses_error and not uses_value:
        return Bucket.ERROR
    if uses_value and not uses_error:
        return Bucket.VALUE
    return Bucket.COMMON


def _branch_bucket(
    statement: cst.BaseStatement, own: Binding, other: Binding
) -> Bucket:
    names = subtree_names(statement)
    if other.referenced_by(names) and not own.referenced_by(names):
        return bucket_for(other)
    return bucket_for(own)


def classify(
    statements: Sequence[cst.BaseStatement], value: Binding, error: Binding
) -> Partition:
    buckets: dict[Bucket, list[cst.BaseStatement]] = {
        Bucket.VALUE: [],
        Bucket.ERROR: [],
        Bucket.COMMON: [],
    }
    for statement in statements:
        guard = null_guard(statement, value, error)
        if guard is None:
            if isinstance(statement, cst.If):
                condition = subtree_names(statement.test)
                for binding in (value, error):
                    if binding.referenced_by(condition):
                        raise UnsupportedCallback(
                            f"condition on '{binding.name}' is not a None comparison"
                        )
            buckets[statement_bucket(statement, value, error)].append(statement)
            continue
        guarded = guard.binding
        unguarded = error if guarded is value else value
        if guard.then_is_non_null:
            then_binding, else_binding = guarded, unguarded
        else:
            then_binding, else_binding = unguarded, guarded
        for branch, own in (
            (guard.then_statements, then_binding),
            (guard.else_statements, else_binding),
        ):
            other = error if own is value else value
            for sub_statement in branch:
                buckets[_branch_bucket(sub_statement, own, other)].append(sub_statement)
    return Partition(
        value=tuple(buckets[Bucket.VALUE]),
        error=tuple(buckets[Bucket.ERROR]),
        common=tuple(buckets[Bucket.COMMON]),
    )


def ensure_locals_confined(
    partition: Partition, local_nodes: Mapping[str, frozenset[cst.CSTNode]]
) -> None:
    """Reject callbacks whose local variables would span two methods."""
    placements: dict[Bucket, frozenset[cst.CSTNode]] = {}
    for bucket in Bucket:
        nodes: set[cst.CSTNode] = set()
        for statement in partition.bucket(bucket):
            nodes |= subtree_nodes(statement)
        placements[bucket] = frozenset(nodes)
    for name in sorted(local_nodes):
        used = [
            bucket
            for bucket in Bucket
            if not placements[bucket].isdisjoint(local_nodes[name])
        ]
        if len(used) > 1:
            raise UnsupportedCallback(
                f"local '{name}' is shared between lifecycle methods"
            )
