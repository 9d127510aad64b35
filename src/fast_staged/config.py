from __future__ import annotations

import json
import re
import tomllib
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from fast_staged.errors import ConfigInvalidError, ConfigNotFoundError

PACKAGE_JSON_KEY = "fast-staged"
CONFIG_CANDIDATES = (
    ".fast-staged.toml",
    "fast-staged.toml",
    ".fast-staged.json",
    "fast-staged.json",
    "package.json",
)
DEFAULT_CONFIG_NAME = ".fast-staged.toml"

DURATION_NUMBER = re.compile(r"\d+(?:\.\d+)?")
DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)\s*([a-z]+)")
DURATION_UNITS = {
    "ms": 0.001,
    "msec": 0.001,
    "millis": 0.001,
    "s": 1.0,
    "sec": 1.0,
    "secs": 1.0,
    "second": 1.0,
    "seconds": 1.0,
    "m": 60.0,
    "min": 60.0,
    "mins": 60.0,
    "minute": 60.0,
    "minutes": 60.0,
    "h": 3600.0,
    "hr": 3600.0,
    "hour": 3600.0,
    "hours": 3600.0,
}


class ExecutionOrder(str, Enum):
    PARALLEL = "parallel"
    SEQUENTIAL = "sequential"


def parse_duration(value: object) -> float:
    """Parse ``30``, ``"100ms"``, ``"1m 30s"`` and similar into seconds."""
    if isinstance(value, bool):
        raise ValueError(f"invalid duration: {value!r}")
    if isinstance(value, int | float):
        if value < 0:
            raise ValueError(f"duration must not be negative: {value!r}")
        return float(value)
    if not isinstance(value, str):
        raise ValueError(f"invalid duration: {value!r}")

    text = value.strip().lower()
    if not text:
        raise ValueError("duration is empty")
    if DURATION_NUMBER.fullmatch(text):
        return float(text)

    total = 0.0
    position = 0
    for match in DURATION_PART.finditer(text):
        if text[position : match.start()].strip():
            raise ValueError(f"invalid duration: {value!r}")
        amount, unit = match.groups()
        if unit not in DURATION_UNITS:
            raise ValueError(f"unknown duration unit '{unit}' in {value!r}")
        total += float(amount) * DURATION_UNITS[unit]
        position = match.end()
    if position == 0 or text[position:].strip():
        raise ValueError(f"invalid duration: {value!r}")
    return total


def format_duration(seconds: float) -> str:
    if seconds < 1 or not float(seconds).is_integer():
        millis = round(seconds * 1000)
        return f"{millis}ms"
    whole = int(seconds)
    if whole % 3600 == 0:
        return f"{whole // 3600}h"
    if whole % 60 == 0:
        return f"{whole // 60}m"
    return f"{whole}s"


@dataclass(slots=True)
class Group:
    name: str
    patterns: dict[str, list[str]]
    timeout: float | None = None
    execution_order: ExecutionOrder = ExecutionOrder.PARALLEL


@dataclass(slots=True)
class GroupConfig:
    patterns: dict[str, list[str]] = field(default_factory=dict)
    timeout: float | None = None
    execution_order: ExecutionOrder | None = None


@dataclass(slots=True)
class StagedConfig:
    timeout: float | None = None
    group_configs: dict[str, GroupConfig] = field(default_factory=dict)
    source: Path | None = None

    def groups(self) -> list[Group]:
        """Resolve groups in declaration order, applying the top-level defaults."""
        return [
            Group(
                name=name,
                patterns={pattern: list(commands) for pattern, commands in group.patterns.items()},
                timeout=group.timeout if group.timeout is not None else self.timeout,
                execution_order=group.execution_order or ExecutionOrder.PARALLEL,
            )
            for name, group in self.group_configs.items()
        ]

    def all_patterns(self) -> list[str]:
        patterns: list[str] = []
        for group in self.group_configs.values():
            patterns.extend(group.patterns)
        return patterns

    @classmethod
    def from_dict(cls, data: Any, path: Path) -> StagedConfig:
        if not isinstance(data, dict):
            raise ConfigInvalidError(path, "configuration must be a table/object")

        timeout = _parse_timeout(data.get("timeout"), path, "timeout")
        group_configs: dict[str, GroupConfig] = {}
        for name, raw_group in data.items():
            if name == "timeout":
                continue
            if not isinstance(raw_group, dict):
                raise ConfigInvalidError(path, f"group '{name}' must be a table/object")
            group_configs[name] = _parse_group(name, raw_group, path)

        if not group_configs:
            raise ConfigInvalidError(path, "no command groups defined")
        return cls(timeout=timeout, group_configs=group_configs, source=path)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {}
        if self.timeout is not None:
            data["timeout"] = format_duration(self.timeout)
        for name, group in self.group_configs.items():
            payload: dict[str, Any] = {}
            if group.execution_order is not None:
                payload["execution_order"] = group.execution_order.value
            if group.timeout is not None:
                payload["timeout"] = format_duration(group.timeout)
            payload["patterns"] = {
                pattern: list(commands) for pattern, commands in group.patterns.items()
            }
            data[name] = payload
        return data


def _parse_timeout(value: object, path: Path, where: str) -> float | None:
    if value is None:
        return None
    try:
        return parse_duration(value)
    except ValueError as exc:
        raise ConfigInvalidError(path, f"{where}: {exc}") from exc


def _parse_group(name: str, raw_group: dict[str, Any], path: Path) -> GroupConfig:
    unknown = sorted(set(raw_group) - {"patterns", "timeout", "execution_order"})
    if unknown:
        raise ConfigInvalidError(path, f"group '{name}' has unknown keys: {', '.join(unknown)}")

    raw_patterns = raw_group.get("patterns")
    if not isinstance(raw_patterns, dict) or not raw_patterns:
        raise ConfigInvalidError(path, f"group '{name}' must define a non-empty 'patterns' table")

    patterns: dict[str, list[str]] = {}
    for pattern, commands in raw_patterns.items():
        if isinstance(commands, str):
            commands = [commands]
        if not isinstance(commands, list) or not all(
            isinstance(command, str) and command.strip() for command in commands
        ):
            raise ConfigInvalidError(
                path, f"group '{name}' pattern '{pattern}' must map to a list of commands"
            )
        patterns[pattern] = [command.strip() for command in commands]

    order: ExecutionOrder | None = None
    raw_order = raw_group.get("execution_order")
    if raw_order is not None:
        try:
            order = ExecutionOrder(str(raw_order).lower())
        except ValueError as exc:
            raise ConfigInvalidError(
                path,
                f"group '{name}' execution_order must be 'parallel' or 'sequential', "
                f"got {raw_order!r}",
            ) from exc

    return GroupConfig(
        patterns=patterns,
        timeout=_parse_timeout(raw_group.get("timeout"), path, f"group '{name}' timeout"),
        execution_order=order,
    )


def default_config() -> StagedConfig:
    return StagedConfig(
        timeout=60.0,
        group_configs={
            "lint": GroupConfig(
                patterns={"*.py": ["ruff check $FILE"]},
                execution_order=ExecutionOrder.PARALLEL,
            ),
            "format": GroupConfig(
                patterns={"*.py": ["ruff format --check $FILE"]},
                timeout=30.0,
                execution_order=ExecutionOrder.SEQUENTIAL,
            ),
        },
    )


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        return rendered if rendered else "0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: StagedConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    if "timeout" in data:
        lines.append(f"timeout = {_toml_value(data['timeout'])}")
        lines.append("")
    for name, group in data.items():
        if name == "timeout":
            continue
        section = json.dumps(name, ensure_ascii=False)
        lines.append(f"[{section}]")
        for key, value in group.items():
            if key != "patterns":
                lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
        lines.append(f"[{section}.patterns]")
        for pattern, commands in group["patterns"].items():
            lines.append(f"{json.dumps(pattern, ensure_ascii=False)} = {_toml_value(commands)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def find_config_file(directory: Path) -> Path:
    checked: list[Path] = []
    for name in CONFIG_CANDIDATES:
        path = directory / name
        checked.append(path)
        if path.is_file():
            return path
    raise ConfigNotFoundError(checked)


def _read_text(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigInvalidError(path, f"Failed to read file: {exc}") from exc


def load_config(path: Path) -> StagedConfig:
    text = _read_text(path)
    if path.suffix == ".toml":
        try:
            data = tomllib.loads(text)
        except tomllib.TOMLDecodeError as exc:
            raise ConfigInvalidError(path, f"Invalid TOML: {exc}") from exc
        return StagedConfig.from_dict(data, path)

    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ConfigInvalidError(path, f"Invalid JSON: {exc}") from exc

    if path.name == "package.json":
        if not isinstance(data, dict) or PACKAGE_JSON_KEY not in data:
            raise ConfigInvalidError(
                path, f"No '{PACKAGE_JSON_KEY}' section found in package.json"
            )
        data = data[PACKAGE_JSON_KEY]
    return StagedConfig.from_dict(data, path)


def resolve_config(directory: Path, explicit: Path | None = None) -> StagedConfig:
    if explicit is not None:
        if not explicit.is_file():
            raise ConfigNotFoundError([explicit])
        return load_config(explicit)
    return load_config(find_config_file(directory))


def save_config(path: Path, config: StagedConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
