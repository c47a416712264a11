"""Immutable plan values: the ordered external commands a request resolves to."""
from __future__ import annotations

from dataclasses import dataclass, fields, is_dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Tuple
import json

from .requests import Request


@dataclass(frozen=True, slots=True)
class Step:
    label: str
    argv: Tuple[str, ...]
    cwd: Path
    env: Tuple[Tuple[str, str], ...] = ()
    destructive: bool = False

    @property
    def environment(self) -> Dict[str, str]:
        return dict(self.env)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "label": self.label,
            "argv": list(self.argv),
            "cwd": str(self.cwd),
            "env": dict(self.env),
            "destructive": self.destructive,
        }


@dataclass(frozen=True, slots=True)
class Plan:
    request: Request
    workspace: Path
    steps: Tuple[Step, ...] = ()
    unsafe: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operation": self.request.operation,
            "request": _request_mapping(self.request),
            "workspace": str(self.workspace),
            "unsafe": self.unsafe,
            "steps": [step.to_dict() for step in self.steps],
        }


def _jsonable(value: Any) -> Any:
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, tuple):
        return [_jsonable(item) for item in value]
    if is_dataclass(value):
        return _request_mapping(value)
    return value


def _request_mapping(request: Any) -> Mapping[str, Any]:
    return {item.name: _jsonable(getattr(request, item.name)) for item in fields(request)}


def serialize_plan(plan: Plan) -> str:
    return json.dumps(plan.to_dict(), indent=2, sort_keys=True)


__all__ = ["Plan", "Step", "serialize_plan"]
