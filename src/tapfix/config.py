from __future__ import annotations

from dataclasses import fields
from datetime import date, datetime, time
from pathlib import Path
from typing import TypeAlias
import tomllib

from tapfix.rewrite.model import RewriteConfig, RuntimeSymbols

DEFAULT_CONFIG_NAME = "tapfix.toml"

TomlScalar: TypeAlias = str | int | float | bool | None | date | datetime | time
TomlValue: TypeAlias = TomlScalar | list["TomlValue"] | dict[str, "TomlValue"]
TomlTable: TypeAlias = dict[str, TomlValue]


def _load_toml(path: Path) -> TomlTable:
    try:
        raw = path.read_text(encoding="utf-8")
    except OSError:
        return {}
    try:
        data = tomllib.loads(raw)
    except tomllib.TOMLDecodeError:
        return {}
    return data if isinstance(data, dict) else {}


def load_config(root: Path | None = None, config_path: Path | None = None) -> TomlTable:
    if config_path is None:
        base = root if root is not None else Path.cwd()
        config_path = base / DEFAULT_CONFIG_NAME
    return _load_toml(config_path)


def _section(data: TomlTable, name: str) -> TomlTable:
    section = data.get(name, {})
    return section if isinstance(section, dict) else {}


def rewrite_defaults(
    root: Path | None = None, config_path: Path | None = None
) -> TomlTable:
    return _section(load_config(root=root, config_path=config_path), "rewrite")


def runtime_defaults(
    root: Path | None = None, config_path: Path | None = None
) -> TomlTable:
    return _section(load_config(root=root, config_path=config_path), "runtime")


def _normalize_name_list(value: TomlValue) -> list[str]:
    items: list[str] = []
    if value is None:
        return items
    if isinstance(value, str):
        items = [part.strip() for part in value.split(",") if part.strip()]
    elif isinstance(value, (list, tuple, set)):
        for item in value:
            if isinstance(item, str):
                items.extend([part.strip() for part in item.split(",") if part.strip()])
    return [item for item in items if item]


def _as_bool(value: TomlValue) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value != 0
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return False


def merge_payload(payload: TomlTable, defaults: TomlTable) -> TomlTable:
    merged = dict(defaults)
    for key, value in payload.items():
        if value is None:
            continue
        merged[key] = value
    return merged


def runtime_symbols(section: TomlTable | None) -> RuntimeSymbols:
    if not isinstance(section, dict):
        return RuntimeSymbols()
    overrides: dict[str, str] = {}
    for item in fields(RuntimeSymbols):
        value = section.get(item.name)
        if isinstance(value, str) and value.strip():
            overrides[item.name] = value.strip()
    return RuntimeSymbols(**overrides)


def rewrite_config(
    section: TomlTable | None, runtime: TomlTable | None = None
) -> RewriteConfig:
    """Build a :class:`RewriteConfig` from a ``[rewrite]`` table.

    Unknown keys are ignored and values of the wrong kind keep their default.
    """
    base = RewriteConfig()
    if not isinstance(section, dict):
        section = {}
    strings: dict[str, str] = {}
    for key in (
        "target_method",
        "replacement_method",
        "error_type",
        "element_type_fallback",
        "listener_suffix",
    ):
        value = section.get(key)
        if isinstance(value, str):
            strings[key] = value.strip()
    for key in ("target_method", "replacement_method", "error_type", "listener_suffix"):
        if key in strings and not strings[key]:
            del strings[key]
    receiver_types = _normalize_name_list(section.get("receiver_types"))
    strict = section.get("strict_receiver")
    return RewriteConfig(
        target_method=strings.get("target_method", base.target_method),
        replacement_method=strings.get("replacement_method", base.replacement_method),
        receiver_types=tuple(receiver_types) or base.receiver_types,
        strict_receiver=base.strict_receiver if strict is None else _as_bool(strict),
        error_type=strings.get("error_type", base.error_type),
        element_type_fallback=strings.get(
            "element_type_fallback", base.element_type_fallback
        ),
        listener_suffix=strings.get("listener_suffix", base.listener_suffix),
        exclude=tuple(_normalize_name_list(section.get("exclude"))),
        runtime=runtime_symbols(runtime),
    )
