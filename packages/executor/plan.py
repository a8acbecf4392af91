"""
Plan model - the tagged union of steps an LLM proposes

A plan is validated completely before anything executes: a malformed plan is
rejected with a descriptive PlanValidationError and never partially run.
Raw LLM text is accepted too (code fences, surrounding prose and
Python-literal quoting are tolerated).
"""

from __future__ import annotations

import json
import re
from typing import Annotated, Any, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from governance import sanitize_path

from .errors import PlanValidationError

VENV_COMMAND = "python3 -m venv venv"

_FENCE_OPEN = re.compile(r"^```(?:json)?\s*", re.IGNORECASE)
_FENCE_CLOSE = re.compile(r"\s*```$")
_OBJECT = re.compile(r"\{[\s\S]*\}")
_CODE_MARKERS = ("margin:", "font-family:", "def ", "function ", "import ", "const ", "class ")


class FileEditStep(BaseModel):
    """Full replace (no old_content) or snippet replace of one file."""
    model_config = ConfigDict(populate_by_name=True)

    type: Literal["file_edit"] = "file_edit"
    path: str
    new_content: str = Field(..., alias="newContent")
    old_content: Optional[str] = Field(default=None, alias="oldContent")
    description: Optional[str] = None

    @field_validator("path")
    @classmethod
    def _sanitize_path(cls, value: str) -> str:
        result = sanitize_path(value)
        if not result.ok:
            raise ValueError(result.error)
        return result.path

    @property
    def is_full_replace(self) -> bool:
        return not self.old_content

    def to_dict(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


class CommandStep(BaseModel):
    """One shell command."""
    model_config = ConfigDict(populate_by_name=True)

    type: Literal["command"] = "command"
    command: str
    description: Optional[str] = None

    @field_validator("command")
    @classmethod
    def _require_command(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("command required")
        return value

    def to_dict(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


PlanStep = Annotated[Union[FileEditStep, CommandStep], Field(discriminator="type")]


class Plan(BaseModel):
    """Ordered steps plus an optional summary."""
    steps: List[PlanStep]
    summary: Optional[str] = None

    @field_validator("steps")
    @classmethod
    def _require_steps(cls, value: list) -> list:
        if not value:
            raise ValueError("Plan contains no steps")
        return value

    @property
    def edit_steps(self) -> List[FileEditStep]:
        return [s for s in self.steps if isinstance(s, FileEditStep)]

    @property
    def edit_paths(self) -> List[str]:
        """Distinct edited paths in first-seen order."""
        seen: List[str] = []
        for step in self.edit_steps:
            if step.path not in seen:
                seen.append(step.path)
        return seen

    def to_dict(self) -> dict:
        data = {"steps": [step.to_dict() for step in self.steps]}
        if self.summary is not None:
            data["summary"] = self.summary
        return data


def _strip_value_error(msg: str) -> str:
    return msg[len("Value error, "):] if msg.startswith("Value error, ") else msg


def _describe(exc: ValidationError) -> str:
    """Turn the first pydantic error into a message fit for the UI."""
    err = exc.errors()[0]
    loc = err.get("loc", ())
    msg = _strip_value_error(err.get("msg", "invalid value"))

    if loc and loc[0] == "steps" and len(loc) >= 2 and isinstance(loc[1], int):
        index = loc[1]
        if err.get("type") in ("union_tag_not_found", "union_tag_invalid"):
            return f"Invalid step at index {index}: type must be 'file_edit' or 'command'"
        step_type = loc[2] if len(loc) > 2 else None
        field_name = loc[3] if len(loc) > 3 else None
        if step_type == "file_edit":
            if field_name == "path" and err.get("type") == "value_error":
                return f"Invalid file_edit step at index {index}: {msg}"
            return f"Invalid file_edit step at index {index}: path and newContent required"
        if step_type == "command":
            return f"Invalid command step at index {index}: command required"
        return f"Invalid step at index {index}: {msg}"

    if loc and loc[0] == "steps":
        if msg == "Plan contains no steps":
            return msg
        return "LLM did not return a valid plan (missing steps array)"
    return f"Invalid plan: {msg}"


def _extract_json(raw: str) -> Any:
    """Pull the plan object out of raw LLM output."""
    trimmed = raw.strip()
    looks_like_json = trimmed.startswith("{") or trimmed.startswith("[") or "steps" in trimmed
    if not looks_like_json and any(marker in trimmed for marker in _CODE_MARKERS):
        raise PlanValidationError("LLM returned code instead of JSON. Rephrase as a clear task request.")

    text = _FENCE_CLOSE.sub("", _FENCE_OPEN.sub("", trimmed))
    match = _OBJECT.search(text)
    if not match:
        raise PlanValidationError("LLM did not return valid JSON with steps array.")
    json_str = match.group(0)

    # Python-literal output: {'steps': [...], 'ok': True}
    if "'" in json_str and '"' not in json_str:
        json_str = (
            json_str.replace("'", '"')
            .replace("True", "true")
            .replace("False", "false")
            .replace("None", "null")
        )

    try:
        return json.loads(json_str)
    except json.JSONDecodeError as e:
        raise PlanValidationError(f"Failed to parse JSON: {e}")


def parse_plan(raw: Union[str, dict, Plan]) -> Plan:
    """
    Validate a plan from a dict, a Plan, or raw LLM text.

    Args:
        raw: Plan object, decoded JSON dict, or raw text

    Returns:
        Validated Plan

    Raises:
        PlanValidationError: If the input is not a well-formed plan
    """
    if isinstance(raw, Plan):
        return raw

    data = _extract_json(raw) if isinstance(raw, str) else raw
    if not isinstance(data, dict) or not isinstance(data.get("steps"), list):
        raise PlanValidationError("LLM did not return a valid plan (missing steps array)")

    try:
        return Plan.model_validate(data)
    except ValidationError as e:
        raise PlanValidationError(_describe(e))


def is_python_plan(plan: Plan) -> bool:
    for step in plan.steps:
        if isinstance(step, FileEditStep):
            p = step.path.lower()
            if p.endswith(".py") or p in ("requirements.txt", "pyproject.toml"):
                return True
        elif re.search(r"python3?|pip3?|venv/bin/(pip|python)", step.command.lower()):
            return True
    return False


def ensure_python_venv_step(plan: Plan) -> Plan:
    """Insert a venv creation step before the first command of a Python plan."""
    if not is_python_plan(plan):
        return plan
    if any(isinstance(s, CommandStep) and re.search(r"python3\s+-m\s+venv\s+venv", s.command) for s in plan.steps):
        return plan

    venv_step = CommandStep(command=VENV_COMMAND, description="Create Python virtual environment")
    steps = list(plan.steps)
    first_command = next((i for i, s in enumerate(steps) if isinstance(s, CommandStep)), None)
    if first_command is None:
        steps.append(venv_step)
    else:
        steps.insert(first_command, venv_step)
    return Plan(steps=steps, summary=plan.summary)
