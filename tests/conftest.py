from __future__ import annotations

import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
for entry in (ROOT, ROOT / "src"):
    if str(entry) not in sys.path:
        sys.path.insert(0, str(entry))


import pytest

from tests import signal_runtime


@pytest.fixture(autouse=True)
def _reset_signal_runtime():
    signal_runtime.reset()
    yield
    signal_runtime.reset()


@pytest.fixture
def runtime_config():
    from tapfix.rewrite.model import RewriteConfig, RuntimeSymbols

    return RewriteConfig(
        receiver_types=("tests.signal_runtime.Mono",),
        runtime=RuntimeSymbols(
            listener="tests.signal_runtime.DefaultSignalListener",
            signal_type="tests.signal_runtime.SignalType",
            on_discard="tests.signal_runtime.on_discard",
            on_error_dropped="tests.signal_runtime.on_error_dropped",
            context="tests.signal_runtime.Context",
        ),
    )


@pytest.fixture
def write_config():
    def _write(root: Path, extra: str = "") -> Path:
        path = root / "tapfix.toml"
        path.write_text(
            "[rewrite]\n"
            'receiver_types = ["tests.signal_runtime.Mono"]\n'
            f"{extra}"
            "\n"
            "[runtime]\n"
            'listener = "tests.signal_runtime.DefaultSignalListener"\n'
            'signal_type = "tests.signal_runtime.SignalType"\n'
            'on_discard = "tests.signal_runtime.on_discard"\n'
            'on_error_dropped = "tests.signal_runtime.on_error_dropped"\n'
            'context = "tests.signal_runtime.Context"\n'
        )
        return path

    return _write
