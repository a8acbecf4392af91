"""
Pytest configuration for executor tests.

Provides an in-memory file store, a scripted command runner (no real
processes) and a SandboxManager wired to both.
"""

from pathlib import Path
from typing import Dict, List, Optional

import pytest

from executor import CommandResult, FileApplier, InMemoryFileStore, SandboxManager


class FakeRunner:
    """
    Scripted stand-in for CommandRunner.

    Results are queued per command; the last queued result repeats. Commands
    with nothing queued return `default`. Every call is recorded together
    with a snapshot of the files present in cwd.
    """

    def __init__(self, default: Optional[CommandResult] = None):
        self.default = default or CommandResult(exit_code=0, stdout="ok")
        self.scripts: Dict[str, List[CommandResult]] = {}
        self.calls: List[dict] = []

    def script(self, command: str, *results: CommandResult) -> "FakeRunner":
        self.scripts[command] = list(results)
        return self

    def run(self, command, cwd, timeout_ms=None, cancel_event=None, env=None) -> CommandResult:
        root = Path(cwd)
        files = {
            p.relative_to(root).as_posix(): p.read_text(encoding="utf-8")
            for p in root.rglob("*")
            if p.is_file()
        }
        self.calls.append({"command": command, "cwd": root, "timeout_ms": timeout_ms, "files": files})
        queued = self.scripts.get(command)
        if not queued:
            return self.default
        return queued.pop(0) if len(queued) > 1 else queued[0]

    def commands(self) -> List[str]:
        return [c["command"] for c in self.calls]


@pytest.fixture
def store():
    return InMemoryFileStore()


@pytest.fixture
def fake_runner():
    return FakeRunner()


@pytest.fixture
def sandbox_manager(store, fake_runner, tmp_path):
    return SandboxManager(
        store=store,
        runner=fake_runner,
        base_dir=tmp_path / "sandboxes",
        applier=FileApplier(),
    )
