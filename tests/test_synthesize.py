from __future__ import annotations

from pathlib import Path
import sys
import threading
import textwrap

import pytest

from tests import signal_runtime
from tests.signal_runtime import Mono, SignalType


def _load():
    repo_root = Path(__file__).resolve().parents[1]
    sys.path.insert(0, str(repo_root / "src"))
    from tapfix.rewrite.engine import RewriteEngine
    from tapfix.rewrite.model import SiteStatus
    from tapfix.rewrite.synthesize import LIFECYCLE_METHODS

    return RewriteEngine, SiteStatus, LIFECYCLE_METHODS


def _rewrite(source: str, config) -> str:
    RewriteEngine, SiteStatus, _ = _load()
    result = RewriteEngine(config=config).rewrite_source(
        textwrap.dedent(source).lstrip(), path="sample.py"
    )
    assert [site.status for site in result.sites] == [SiteStatus.REWRITTEN]
    return result.new_source


def _execute(source: str) -> dict[str, object]:
    namespace: dict[str, object] = {"__name__": "sample"}
    exec(compile(source, "sample.py", "exec", dont_inherit=True), namespace)
    return namespace


GUARDED = """
from tests.signal_runtime import Mono

EVENTS = []


def emit(*args):
    EVENTS.append(args)


def subscribe(source: Mono[str]) -> None:
    def callback(value, error):
        if error is not None:
            emit("err", error)
        else:
            emit("ok", value)
        emit("done")

    source.do_after_success_or_error(callback)
"""


def _outcomes(source: str, publisher: Mono) -> list[tuple]:
    namespace = _execute(source)
    namespace["subscribe"](publisher)
    return list(namespace["EVENTS"])


GUARDED_BODY = """        if error is not None:
            emit("err", error)
        else:
            emit("ok", value)
        emit("done")"""


def _with_body(body: str) -> str:
    statements = textwrap.indent(textwrap.dedent(body).strip(), "        ")
    return GUARDED.replace(GUARDED_BODY, statements)


@pytest.mark.parametrize(
    "body",
    [
        GUARDED,
        _with_body(
            """
            if error is None:
                emit("ok", value)
            if value == None:
                emit("err", error)
            emit("done", value, error)
            """
        ),
        _with_body(
            """
            if error is not None:
                emit("err", error, value)
            else:
                emit("ok", value, error)
            emit("done")
            """
        ),
        _with_body(
            """
            if error is None:
                emit("ok", value)
                emit("success")
            else:
                emit("failure")
            emit("done")
            """
        ),
        _with_body(
            """
            if error is not None:
                emit("err", error)
            elif value == "a":
                emit("ok", value)
            emit("done")
            """
        ),
    ],
    ids=["guarded", "separate-guards", "both-bindings", "neither-binding", "elif"],
)
def test_rewritten_listener_matches_callback(body: str, runtime_config) -> None:
    original = textwrap.dedent(body).lstrip()
    rewritten = _rewrite(body, runtime_config)
    assert "do_after_success_or_error" not in rewritten
    failure = ValueError("boom")
    for publisher in (Mono.just("a"), Mono.failed(failure)):
        assert _outcomes(rewritten, publisher) == _outcomes(original, publisher)


def test_listener_shape(runtime_config) -> None:
    _, _, LIFECYCLE_METHODS = _load()
    rewritten = _rewrite(GUARDED, runtime_config)
    assert "class CallbackListener(DefaultSignalListener[str]):" in rewritten
    assert "source.tap(CallbackListener)" in rewritten
    assert "def callback(" not in rewritten
    namespace = _execute(rewritten)
    namespace["subscribe"](Mono.empty())
    assert "import threading\n" in rewritten
    assert (
        "from tests.signal_runtime import Context, DefaultSignalListener, "
        "SignalType, on_discard, on_error_dropped\n"
    ) in rewritten
    for method in LIFECYCLE_METHODS:
        assert f"    def {method}(self" in rewritten


class _Capture(Mono):
    """Records the listener factory instead of subscribing."""

    factory = None

    def tap(self, factory):
        self.factory = factory
        return self


def _listener(config, source: str = GUARDED):
    namespace = _execute(_rewrite(source, config))
    capture = _Capture()
    namespace["subscribe"](capture)
    return capture.factory, namespace["EVENTS"]


def test_final_runs_at_most_once(runtime_config) -> None:
    Listener, events = _listener(runtime_config)
    listener = Listener()
    listener.add_context(signal_runtime.Context())
    listener.on_value("a")
    listener.on_complete()
    listener.on_final(SignalType.ON_COMPLETE)
    listener.on_final(SignalType.ON_COMPLETE)
    listener.on_final(SignalType.ON_ERROR)
    assert events == [("ok", "a"), ("done",)]


def test_cancel_discards_value_and_skips_common(runtime_config) -> None:
    Listener, events = _listener(runtime_config)
    listener = Listener()
    context = signal_runtime.Context(request="r1")
    listener.add_context(context)
    listener.on_value("a")
    listener.on_cancel()
    listener.on_cancel()
    listener.on_final(SignalType.CANCEL)
    listener.on_final(SignalType.ON_COMPLETE)
    assert events == [("ok", "a")]
    assert signal_runtime.DISCARDED == [("a", context)]


def test_cancel_after_terminal_is_ignored(runtime_config) -> None:
    Listener, events = _listener(runtime_config)
    listener = Listener()
    listener.on_value("a")
    listener.on_complete()
    listener.on_cancel()
    listener.on_final(SignalType.ON_COMPLETE)
    assert events == [("ok", "a"), ("done",)]
    assert signal_runtime.DISCARDED == []


def test_late_value_is_discarded(runtime_config) -> None:
    Listener, events = _listener(runtime_config)
    listener = Listener()
    listener.on_complete()
    listener.on_value("late")
    assert events == []
    assert signal_runtime.DISCARDED == [("late", None)]


def test_second_error_is_dropped(runtime_config) -> None:
    Listener, events = _listener(runtime_config)
    listener = Listener()
    context = listener.add_context(signal_runtime.Context())
    first, second = ValueError("first"), ValueError("second")
    listener.on_error(first)
    listener.on_error(second)
    listener.on_final(SignalType.ON_ERROR)
    assert events == [("err", first), ("done",)]
    assert signal_runtime.DROPPED == [(second, context)]


def test_empty_callback_has_no_visible_effect(runtime_config) -> None:
    source = GUARDED.replace(
        """        if error is not None:
            emit("err", error)
        else:
            emit("ok", value)
        emit("done")""",
        """        pass""",
    )
    rewritten = _rewrite(source, runtime_config)
    namespace = _execute(rewritten)
    namespace["subscribe"](Mono.just("a"))
    assert namespace["EVENTS"] == []
    assert signal_runtime.DISCARDED == []


def test_each_listener_owns_a_reentrant_lock(runtime_config) -> None:
    Listener, _ = _listener(runtime_config)
    first, second = Listener(), Listener()
    assert first._lock is not second._lock
    with first._lock:
        with first._lock:
            first.on_value("a")
    assert first._value == "a"
    assert second._value is None


def test_docstring_and_global_are_carried_over(runtime_config) -> None:
    source = """
from tests.signal_runtime import Mono

COUNT = 0
EVENTS = []


def subscribe(source: Mono[str]) -> None:
    def on_done(value, error):
        \"\"\"Count finished subscriptions.\"\"\"
        global COUNT
        if error is None:
            EVENTS.append(value)
        COUNT += 1

    source.do_after_success_or_error(on_done)
"""
    rewritten = _rewrite(source, runtime_config)
    assert 'class OnDoneListener(DefaultSignalListener[str]):\n        """Count finished subscriptions."""' in rewritten
    assert rewritten.count("global COUNT") == 2
    namespace = _execute(rewritten)
    namespace["subscribe"](Mono.just("a"))
    namespace["subscribe"](Mono.failed(KeyError("k")))
    assert namespace["COUNT"] == 2
    assert namespace["EVENTS"] == ["a"]


def test_method_callback_keeps_enclosing_self(runtime_config) -> None:
    source = """
from tests.signal_runtime import Mono


class Service:
    def __init__(self):
        self.results = []

    def start(self, source: Mono[str]) -> None:
        def callback(value, error):
            if error is None:
                self.results.append(value)

        source.do_after_success_or_error(callback)
"""
    rewritten = _rewrite(source, runtime_config)
    assert "def on_value(listener, value: str) -> None:" in rewritten
    namespace = _execute(rewritten)
    service = namespace["Service"]()
    service.start(Mono.just("a"))
    assert service.results == ["a"]


def test_opaque_callback_forwards_recorded_outcome(runtime_config) -> None:
    source = """
from tests.signal_runtime import Mono


def subscribe(source: Mono[str], handler) -> None:
    source.do_after_success_or_error(handler)
"""
    rewritten = _rewrite(source, runtime_config)
    assert "import functools\n" in rewritten
    assert "source.tap(functools.partial(HandlerListener, handler))" in rewritten
    namespace = _execute(rewritten)
    received = []
    failure = RuntimeError("x")
    namespace["subscribe"](Mono.just("a"), lambda value, error: received.append((value, error)))
    namespace["subscribe"](Mono.failed(failure), lambda value, error: received.append((value, error)))
    assert received == [("a", None), (None, failure)]


def test_branch_statement_on_other_binding_moves_to_its_method(runtime_config) -> None:
    source = _with_body(
        """
        if error is None:
            emit("ok", value)
            emit("seen", error)
        emit("done")
        """
    )
    rewritten = _rewrite(source, runtime_config)
    failure = ValueError("boom")
    assert _outcomes(rewritten, Mono.just("a")) == [("ok", "a"), ("done",)]
    assert _outcomes(rewritten, Mono.failed(failure)) == [("seen", failure), ("done",)]


def test_racing_complete_and_cancel_finalize_once(runtime_config) -> None:
    Listener, events = _listener(runtime_config)
    winners: list[SignalType] = []

    class Recording(Listener):
        def on_final(self, signal_type):
            with self._lock:
                first = not self._finalized
                super().on_final(signal_type)
            if first:
                winners.append(signal_type)

    for _ in range(200):
        events.clear()
        winners.clear()
        listener = Recording()
        listener.on_value("a")
        barrier = threading.Barrier(2)

        def complete():
            barrier.wait()
            listener.on_complete()
            listener.on_final(SignalType.ON_COMPLETE)

        def cancel():
            barrier.wait()
            listener.on_cancel()
            listener.on_final(SignalType.CANCEL)

        threads = [threading.Thread(target=complete), threading.Thread(target=cancel)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(winners) == 1
        expected = [("done",)] if winners[0] is SignalType.ON_COMPLETE else []
        assert [event for event in events if event == ("done",)] == expected
        assert events.count(("done",)) <= 1
