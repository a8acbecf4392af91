"""
Stack detection and check-command selection

Decides which lint/test/run commands a sandbox should try, from:
1. The workspace stack config file (.patchbay/config.json), first service
2. package.json scripts (Node), in priority order
3. Declared entry points (package.json start/dev/serve or main, Python entry scripts)
4. Per-stack defaults keyed by detected stack

Works on staged file content; the disk is only checked for a virtualenv
interpreter when a sandbox root is given.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Dict, Iterable, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

STACK_CONFIG_PATH = ".patchbay/config.json"


class StackKind(str, Enum):
    NODE = "node"
    PYTHON = "python"
    GO = "go"
    JAVA = "java"
    RUST = "rust"
    DOTNET = "dotnet"
    UNKNOWN = "unknown"


# ==================== Stack config file ====================

class ServiceConfig(BaseModel):
    """One service of the stack config."""
    model_config = ConfigDict(populate_by_name=True)

    name: str = "default"
    root: str = "."
    stack: Literal["node", "python", "go", "java", "rust", "dotnet"]
    lint_command: Optional[str] = Field(default=None, alias="lintCommand")
    test_command: Optional[str] = Field(default=None, alias="testCommand")
    run_command: Optional[str] = Field(default=None, alias="runCommand")


class StackConfig(BaseModel):
    services: List[ServiceConfig] = Field(..., min_length=1)

    def to_dict(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


def parse_stack_config(content: Union[str, dict]) -> Tuple[Optional[StackConfig], List[str]]:
    """
    Parse and validate stack config content.

    Returns:
        (config, []) on success, (None, errors) otherwise
    """
    try:
        data = json.loads(content) if isinstance(content, str) else content
    except json.JSONDecodeError as e:
        return None, [f"Invalid JSON: {e}"]
    try:
        return StackConfig.model_validate(data), []
    except ValidationError as e:
        errors = []
        for err in e.errors():
            loc = ".".join(str(part) for part in err.get("loc", ()))
            errors.append(f"{loc}: {err.get('msg')}" if loc else err.get("msg", "invalid"))
        return None, errors


# ==================== Detection ====================

_MARKERS: List[Tuple[StackKind, Tuple[str, ...]]] = [
    (StackKind.NODE, ("package.json",)),
    (StackKind.GO, ("go.mod", "go.sum")),
    (StackKind.JAVA, ("pom.xml", "build.gradle", "build.gradle.kts")),
    (StackKind.RUST, ("Cargo.toml",)),
    (StackKind.PYTHON, ("pyproject.toml", "requirements.txt", "setup.py")),
]


def detect_stack_from_paths(paths: Iterable[str]) -> StackKind:
    """Detect stack from workspace-relative paths (basename markers, first match wins)."""
    normalized = [p.replace("\\", "/") for p in paths]
    basenames = {p.rsplit("/", 1)[-1] for p in normalized}
    for kind, markers in _MARKERS:
        if any(m in basenames for m in markers):
            return kind
    if any(p.endswith(".csproj") or p.endswith(".sln") for p in normalized):
        return StackKind.DOTNET
    return StackKind.UNKNOWN


def detect_stack(files: Dict[str, str]) -> StackKind:
    """Detect stack from root-level files of a staged copy."""
    return detect_stack_from_paths([p for p in files if "/" not in p])


# ==================== Command tables ====================

LINT_SCRIPT_PRIORITY = ["lint", "lint:fix", "lint:check", "eslint", "check"]
TEST_SCRIPT_PRIORITY = ["test:unit", "test", "test:ci", "test:run", "jest", "vitest", "jest:ci", "vitest:run"]

STACK_COMMANDS: Dict[StackKind, Dict[str, List[str]]] = {
    StackKind.DOTNET: {
        "lint": ["dotnet format --verify-no-changes", "dotnet build --no-restore"],
        "test": ["dotnet test", "dotnet test --no-build"],
    },
    StackKind.PYTHON: {
        "lint": ["ruff check .", "pylint .", "flake8 ."],
        "test": ["pytest", "python -m pytest", "pytest test/", "python -m pytest test/"],
    },
    StackKind.GO: {
        "lint": ["go vet ./...", "golangci-lint run"],
        "test": ["go test ./..."],
    },
    StackKind.JAVA: {
        "lint": ["mvn checkstyle:check", "mvn validate"],
        "test": ["mvn test", "mvn -q test"],
    },
    StackKind.RUST: {
        "lint": ["cargo clippy --no-deps", "cargo check"],
        "test": ["cargo test", "cargo test --no-fail-fast"],
    },
}


@dataclass(frozen=True)
class RunCandidate:
    """A command that starts the application."""
    cmd: str
    is_server: bool = True


RUN_PROFILES: Dict[StackKind, List[RunCandidate]] = {
    StackKind.JAVA: [
        RunCandidate("mvn spring-boot:run"),
        RunCandidate("./gradlew bootRun"),
    ],
    StackKind.GO: [
        RunCandidate("go run ."),
        RunCandidate("go run main.go"),
    ],
    StackKind.DOTNET: [RunCandidate("dotnet run")],
    StackKind.RUST: [RunCandidate("cargo run")],
}

NODE_RUN_SCRIPTS = ["start", "dev", "serve"]
PYTHON_ENTRY_POINTS = ["main.py", "app.py", "run.py", "server.py", "__main__.py"]
VENV_INTERPRETERS = ["venv/bin/python", ".venv/bin/python"]

NO_NODE_RUN_MESSAGE = "No start/dev/serve script found in package.json"
NO_PYTHON_ENTRY_MESSAGE = "Python project detected but no main entry point found"


def _package_json(files: Dict[str, str]) -> Optional[dict]:
    raw = files.get("package.json")
    if raw is None:
        return None
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        return None
    return data if isinstance(data, dict) else None


def _package_scripts(files: Dict[str, str]) -> Optional[Dict[str, str]]:
    data = _package_json(files)
    if data is None:
        return None
    scripts = data.get("scripts")
    return scripts if isinstance(scripts, dict) else {}


def _first_script(scripts: Optional[Dict[str, str]], priority: List[str]) -> Optional[str]:
    if not scripts:
        return None
    for name in priority:
        if isinstance(scripts.get(name), str):
            return f"npm run {name}"
    return None


def python_entry_point(paths: Iterable[str]) -> Optional[str]:
    """First well-known root entry script, else the only root .py file."""
    root_files = [p for p in paths if "/" not in p.replace("\\", "/")]
    for name in PYTHON_ENTRY_POINTS:
        if name in root_files:
            return name
    scripts = [p for p in root_files if p.endswith(".py") and p != "setup.py"]
    return scripts[0] if len(scripts) == 1 else None


class CheckPlan:
    """Ordered candidate commands for each sandbox check.

    ``root`` is the on-disk copy of ``files``; it is only consulted to find a
    virtualenv interpreter for Python entry scripts.
    """

    def __init__(self, files: Dict[str, str], root: Optional[Path] = None):
        self.files = files
        self.root = root
        self.stack = detect_stack(files)
        self.service = self._load_service()

    def _load_service(self) -> Optional[ServiceConfig]:
        raw = self.files.get(STACK_CONFIG_PATH)
        if raw is None:
            return None
        config, _ = parse_stack_config(raw)
        return config.services[0] if config else None

    def lint_commands(self) -> List[str]:
        if self.service and self.service.lint_command:
            return [self.service.lint_command]
        node_lint = _first_script(_package_scripts(self.files), LINT_SCRIPT_PRIORITY)
        if node_lint:
            return [node_lint, "npm run lint", "yarn lint", "pnpm lint"]
        return list(STACK_COMMANDS.get(self.stack, {}).get("lint", []))

    def test_commands(self) -> List[str]:
        if self.service and self.service.test_command:
            return [self.service.test_command]
        node_test = _first_script(_package_scripts(self.files), TEST_SCRIPT_PRIORITY)
        if node_test:
            return [node_test, "npm test", "npm run test", "yarn test", "pnpm test"]
        return list(STACK_COMMANDS.get(self.stack, {}).get("test", []))

    def run_commands(self) -> List[RunCandidate]:
        """
        Commands that start the application, built only from entry points the
        project actually declares. An empty list means nothing can be run.
        """
        if self.service and self.service.run_command:
            return [RunCandidate(self.service.run_command)]
        if self.stack == StackKind.NODE:
            return self._node_run_commands()
        if self.stack == StackKind.PYTHON:
            return self._python_run_commands()
        return list(RUN_PROFILES.get(self.stack, []))

    def missing_run_reason(self) -> str:
        if self.stack == StackKind.NODE:
            return NO_NODE_RUN_MESSAGE
        if self.stack == StackKind.PYTHON:
            return NO_PYTHON_ENTRY_MESSAGE
        return f"No run command found for {self.stack.value}"

    def _node_run_commands(self) -> List[RunCandidate]:
        data = _package_json(self.files) or {}
        scripts = data.get("scripts") if isinstance(data.get("scripts"), dict) else {}
        candidates = [RunCandidate(f"npm run {name}") for name in NODE_RUN_SCRIPTS if isinstance(scripts.get(name), str)]
        main = data.get("main")
        if isinstance(main, str) and main.strip():
            candidates.append(RunCandidate(f"node {main.strip()}"))
        return candidates

    def _python_run_commands(self) -> List[RunCandidate]:
        entry = python_entry_point(self.files)
        if entry is None:
            return []
        return [RunCandidate(f"{self._python_interpreter()} {entry}")]

    def _python_interpreter(self) -> str:
        if self.root is not None:
            for candidate in VENV_INTERPRETERS:
                if (self.root / candidate).exists():
                    return candidate
        return "python3"


def build_default_config(paths: Iterable[str]) -> StackConfig:
    """Synthesize a single-service config from the detected stack."""
    paths = list(paths)
    stack = detect_stack_from_paths(paths)
    slug = "node" if stack == StackKind.UNKNOWN else stack.value
    commands = STACK_COMMANDS.get(stack, {})
    runs = RUN_PROFILES.get(stack, [])
    run_command = runs[0].cmd if runs else None
    if stack in (StackKind.NODE, StackKind.UNKNOWN):
        lint, test = "npm run lint", "npm test"
        run_command = "npm run start"
    else:
        lint = commands["lint"][0] if commands.get("lint") else None
        test = commands["test"][0] if commands.get("test") else None
    if stack == StackKind.PYTHON:
        entry = python_entry_point(paths)
        run_command = f"python3 {entry}" if entry else None
    service = ServiceConfig(
        name="default",
        root=".",
        stack=slug,
        lint_command=lint,
        test_command=test,
        run_command=run_command,
    )
    return StackConfig(services=[service])
