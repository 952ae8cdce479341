from __future__ import annotations

from pathlib import Path
import sys
import textwrap

import pytest


def _load():
    repo_root = Path(__file__).resolve().parents[1]
    sys.path.insert(0, str(repo_root / "src"))
    from tapfix.exceptions import UnsupportedCallback
    from tapfix.rewrite.bindings import resolve_inline_callback
    from tapfix.rewrite.model import BindingRole

    return UnsupportedCallback, resolve_inline_callback, BindingRole


def _resolve(source: str):
    import libcst as cst
    from libcst.metadata import MetadataWrapper, ScopeProvider

    _, resolve_inline_callback, _ = _load()
    wrapper = MetadataWrapper(cst.parse_module(textwrap.dedent(source).strip() + "\n"))
    scopes = wrapper.resolve(ScopeProvider)
    function = next(
        stmt for stmt in wrapper.module.body if isinstance(stmt, cst.FunctionDef)
    )
    return resolve_inline_callback(function, scopes)


def test_bindings_resolve_every_reference() -> None:
    _, _, BindingRole = _load()
    callback = _resolve(
        """
        def callback(result, failure):
            if failure is not None:
                report(failure, failure.args)
            emit(result)
        """
    )
    assert callback.value.role is BindingRole.VALUE
    assert callback.value.name == "result"
    assert callback.error.role is BindingRole.ERROR
    assert len(callback.error.references) == 3
    assert len(callback.value.references) == 1


def test_shadowing_name_in_other_scope_is_not_a_reference() -> None:
    callback = _resolve(
        """
        def callback(value, error):
            emit([value for value in other])
        """
    )
    assert callback.value.references == frozenset()


def test_comprehension_use_stays_in_callback_frame() -> None:
    callback = _resolve(
        """
        def callback(value, error):
            emit([item for item in value])
            emit([value for _ in range(2)])
        """
    )
    assert len(callback.value.references) == 2


@pytest.mark.parametrize(
    "source, reason",
    [
        ("async def callback(value, error):\n    pass\n", "async"),
        ("@wrap\ndef callback(value, error):\n    pass\n", "decorated"),
        ("def callback(value):\n    pass\n", "two positional"),
        ("def callback(value, error, extra):\n    pass\n", "two positional"),
        ("def callback(value, error=None):\n    pass\n", "defaults"),
        ("def callback(value, error, *rest):\n    pass\n", "two positional"),
        ("def callback(value, *, error):\n    pass\n", "two positional"),
        ("def callback(value, error):\n    return value\n", "'return'"),
        ("def callback(value, error):\n    yield value\n", "'yield'"),
        ("def callback(value, error):\n    value = 1\n", "rebinds 'value'"),
        (
            "def callback(value, error):\n    def inner():\n        emit(value)\n",
            "captured",
        ),
        ("def callback(value, error):\n    hook = lambda: error\n", "captured"),
    ],
)
def test_unsupported_shapes(source: str, reason: str) -> None:
    UnsupportedCallback, _, _ = _load()
    with pytest.raises(UnsupportedCallback) as excinfo:
        _resolve(source)
    assert reason in excinfo.value.reason


def test_nested_function_control_flow_is_allowed() -> None:
    callback = _resolve(
        """
        def callback(value, error):
            def helper(item):
                return item
            emit(helper(1))
        """
    )
    assert len(callback.statements) == 2
    assert "helper" in callback.local_nodes


def test_docstring_and_declarations_are_extracted() -> None:
    callback = _resolve(
        '''
        def callback(value, error):
            """Record the outcome."""
            global COUNT
            COUNT += 1
            emit(value)
        '''
    )
    assert callback.docstring is not None
    assert len(callback.declarations) == 1
    assert len(callback.statements) == 2
    assert "COUNT" not in callback.local_nodes
