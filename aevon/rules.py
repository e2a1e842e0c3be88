"""Aggregation rules and their loading from a directory of YAML files."""

from __future__ import annotations

import hashlib
import os
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any

import yaml

from aevon.aggregators import valid_operator

_RULE_SUFFIXES = (".yaml", ".yml")


class RuleLoadError(Exception):
    """A rule file or directory could not be loaded."""


class RuleNotFoundError(LookupError):
    """No rule exists with the requested name."""


@dataclass(frozen=True)
class AggregationRule:
    """A single aggregation rule, fingerprinted by the file it came from."""

    name: str
    source_event: str
    operator: str
    field: str = ""
    window_size: timedelta = field(default=timedelta(minutes=1))
    fingerprint: str = ""


def _text(raw: dict[str, Any], key: str, path: Path) -> str:
    value = raw.get(key)
    if value is None:
        return ""
    if isinstance(value, (dict, list)):
        raise RuleLoadError(f"parsing rule file {path}: {key} must be a scalar")
    return value if isinstance(value, str) else str(value)


class FileSystemRuleRepository:
    """Rules loaded once from the ``*.yaml``/``*.yml`` files in a directory."""

    def __init__(self, directory: str | os.PathLike[str]) -> None:
        self.directory = Path(directory)
        self._rules: dict[str, AggregationRule] = {}
        self._load()

    def _load(self) -> None:
        try:
            is_dir = self.directory.is_dir()
            exists = self.directory.exists()
        except OSError as exc:
            raise RuleLoadError(f"aggregation rule dir: {exc}") from exc
        if not exists:
            return
        if not is_dir:
            raise RuleLoadError(f"aggregation rule path {str(self.directory)!r} is not a directory")

        try:
            entries = sorted(self.directory.iterdir(), key=lambda p: p.name)
        except OSError as exc:
            raise RuleLoadError(f"reading aggregation rule dir: {exc}") from exc

        for path in entries:
            if path.is_dir() or not path.name.endswith(_RULE_SUFFIXES):
                continue
            self._load_file(path)

    def _load_file(self, path: Path) -> None:
        try:
            data = path.read_bytes()
        except OSError as exc:
            raise RuleLoadError(f"reading rule file {path}: {exc}") from exc

        try:
            raw = yaml.safe_load(data)
        except yaml.YAMLError as exc:
            raise RuleLoadError(f"parsing rule file {path}: {exc}") from exc
        if raw is None:
            return
        if not isinstance(raw, dict):
            raise RuleLoadError(f"parsing rule file {path}: expected a mapping")

        name = _text(raw, "name", path)
        if not name:
            return
        source_event = _text(raw, "source_event", path)
        operator = _text(raw, "operator", path)
        window_size = _text(raw, "window_size", path)
        rule_field = _text(raw, "field", path)

        if not source_event:
            raise RuleLoadError(f"rule {name!r}: source_event must not be empty")
        if not valid_operator(operator):
            raise RuleLoadError(f"rule {name!r}: unsupported operator {operator!r}")
        if window_size and window_size != "1m":
            raise RuleLoadError(
                f"rule {name!r}: window_size customization is disabled (use 1m)"
            )
        if name in self._rules:
            raise RuleLoadError(
                f"rule {name!r}: duplicate rule name (check multiple YAML files)"
            )

        self._rules[name] = AggregationRule(
            name=name,
            source_event=source_event,
            operator=operator,
            field=rule_field,
            window_size=timedelta(minutes=1),
            fingerprint=hashlib.sha256(data).hexdigest(),
        )

    def get(self, name: str) -> AggregationRule:
        """Return the rule named ``name``."""
        try:
            return self._rules[name]
        except KeyError:
            raise RuleNotFoundError(f"aggregation rule {name!r} not found") from None

    def list(self, source_event: str = "") -> list[AggregationRule]:
        """Return all rules, or those for ``source_event`` when it is given."""
        return [
            rule
            for rule in self._rules.values()
            if not source_event or rule.source_event == source_event
        ]

    def get_rules(self) -> list[AggregationRule]:
        """Return every loaded rule."""
        return list(self._rules.values())