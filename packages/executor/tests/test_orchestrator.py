"""
Tests for Plan Execution Orchestrator

Validates:
- End-to-end: edit + passing test → promoted, undo batch recorded
- End-to-end: failing test → one bounded auto-fix, scope lock enforced
- Auto-fix success path (second run)
- Safe-Edit gate (confirmation / max files)
- Failed run check → nothing promoted
- Log entries, summaries and wire shape
"""

import json
import threading

import pytest

from executor import (
    CheckStatus,
    CommandResult,
    ConfirmationRequest,
    EditHistory,
    ExecutionReport,
    FileEditStep,
    PlanExecutor,
    PolicyDeniedError,
    SandboxManager,
    SandboxStatus,
    parse_plan,
)


class RecordingProposer:
    """Returns canned fix steps and records the context it was given."""

    def __init__(self, *steps):
        self.steps = list(steps)
        self.contexts = []

    def propose_fix_steps(self, context):
        self.contexts.append(context)
        return list(self.steps)


class ExplodingProposer:
    def propose_fix_steps(self, context):
        raise RuntimeError("model unavailable")


PACKAGE_JSON = json.dumps({"scripts": {"test": "jest", "start": "node index.js"}})

FAILING_TEST = CommandResult(exit_code=1, stderr="at src/a.ts:3:1 TypeError")


@pytest.fixture
def history():
    return EditHistory()


@pytest.fixture
def node_workspace(store):
    store.write_file("ws", "package.json", PACKAGE_JSON)
    return "ws"


def make_executor(sandbox_manager, history, proposer=None, **kwargs):
    return PlanExecutor(sandbox=sandbox_manager, history=history, fix_proposer=proposer, **kwargs)


def edit_and_test_plan():
    return parse_plan({
        "steps": [
            {"type": "file_edit", "path": "src/a.ts", "newContent": "export const x=1;"},
            {"type": "command", "command": "npm test"},
        ],
    })


# ==================== End-to-end ====================

def test_passing_plan_is_promoted(sandbox_manager, history, store, node_workspace):
    """Edit + passing test: file promoted, run check passed, undo batch pushed."""
    executor = make_executor(sandbox_manager, history)

    report = executor.execute(node_workspace, edit_and_test_plan())

    assert isinstance(report, ExecutionReport)
    assert report.success is True
    assert report.files_edited == ["src/a.ts"]
    assert report.promoted is True
    assert report.run.checks.run.status == CheckStatus.PASSED
    assert store.read_file("ws", "src/a.ts") == "export const x=1;"

    batch = history.pop_undo("ws")
    assert [e.to_dict() for e in batch.entries] == [
        {"path": "src/a.ts", "oldContent": "", "newContent": "export const x=1;", "created": True},
    ]


def test_failing_test_gets_one_scoped_repair(sandbox_manager, history, fake_runner, store, node_workspace):
    """Auto-fix proposes src/b.ts for a failure in src/a.ts: rejected, no second run."""
    fake_runner.script("npm test", FAILING_TEST)
    proposer = RecordingProposer(FileEditStep(path="src/b.ts", new_content="patched"))
    executor = make_executor(sandbox_manager, history, proposer)

    report = executor.execute(node_workspace, edit_and_test_plan())

    assert len(proposer.contexts) == 1
    context = proposer.contexts[0]
    assert context.scope == {"src/a.ts"}
    assert context.exit_code == 1
    assert context.files_edited == ["src/a.ts"]

    rejected = [e for e in report.log if e.message == "Rejected: src/b.ts is outside the repair scope"]
    assert len(rejected) == 1
    assert rejected[0].status == "skipped"
    assert rejected[0].action_label == "AUTO-FIX"

    assert fake_runner.commands().count("npm test") == 1
    assert "src/b.ts" not in report.files_edited
    assert store.read_file("ws", "src/b.ts") is None

    command_entry = next(e for e in report.log if e.type == "command")
    assert command_entry.status == "error"
    assert command_entry.auto_fix_attempted is True
    assert command_entry.second_run_status is None
    assert command_entry.structured_error["failingFile"] == "src/a.ts"
    assert "Tests: 0 passed, 1 failed (auto-fix tried, still failing)." in report.summary


def test_only_one_fix_edit_is_kept(sandbox_manager, history, fake_runner, node_workspace):
    fake_runner.script("npm test", FAILING_TEST, CommandResult(exit_code=0))
    proposer = RecordingProposer(
        FileEditStep(path="src/a.ts", new_content="export const x=2;"),
        FileEditStep(path="src/a.ts", new_content="export const x=3;"),
    )
    executor = make_executor(sandbox_manager, history, proposer)

    report = executor.execute(node_workspace, edit_and_test_plan())

    auto_fix_edits = [e for e in report.log if e.type == "file_edit" and e.action_label == "AUTO-FIX"]
    assert len(auto_fix_edits) == 1
    assert report.run.files["src/a.ts"] == "export const x=2;"


def test_successful_auto_fix(sandbox_manager, history, fake_runner, store, node_workspace):
    fake_runner.script("npm test", FAILING_TEST, CommandResult(exit_code=0, stdout="1 passed"))
    proposer = RecordingProposer(FileEditStep(path="src/a.ts", new_content="export const x=2;"))
    executor = make_executor(sandbox_manager, history, proposer)

    report = executor.execute(node_workspace, edit_and_test_plan())

    command_entry = next(e for e in report.log if e.type == "command")
    assert command_entry.second_run_status == "success"
    assert command_entry.second_run_summary == "OK"
    assert any(e.message == "Auto-fix applied 1 edit(s), second run passed" for e in report.log)
    assert "Tests: 1 passed (auto-fix succeeded)." in report.summary
    assert store.read_file("ws", "src/a.ts") == "export const x=2;"


def test_proposer_failure_is_logged(sandbox_manager, history, fake_runner, node_workspace):
    fake_runner.script("npm test", FAILING_TEST)
    executor = make_executor(sandbox_manager, history, ExplodingProposer())

    report = executor.execute(node_workspace, edit_and_test_plan())

    assert any(e.message == "Auto-fix failed: model unavailable" for e in report.log)
    assert report.success is True


def test_non_test_failure_does_not_repair(sandbox_manager, history, fake_runner, node_workspace):
    fake_runner.script("npm run build", CommandResult(exit_code=2, stderr="at src/a.ts:1:1 boom"))
    proposer = RecordingProposer(FileEditStep(path="src/a.ts", new_content="x"))
    executor = make_executor(sandbox_manager, history, proposer)

    report = executor.execute(node_workspace, parse_plan({"steps": [{"type": "command", "command": "npm run build"}]}))

    assert proposer.contexts == []
    assert "Commands: 0 succeeded, 1 failed." in report.summary


HIDDEN_DIR_FAILURE = CommandResult(exit_code=1, stderr="at .storybook/preview.ts:3:1 TypeError")


@pytest.mark.parametrize("root_dirs,applied", [
    (None, False),
    ([".storybook/"], True),
])
def test_fix_paths_follow_configured_roots(sandbox_manager, history, fake_runner, node_workspace, root_dirs, applied):
    fake_runner.script("npm test", HIDDEN_DIR_FAILURE, CommandResult(exit_code=0))
    proposer = RecordingProposer(FileEditStep(path=".storybook/preview.ts", new_content="export default {};"))
    executor = make_executor(sandbox_manager, history, proposer, allowed_root_dirs=root_dirs)

    report = executor.execute(node_workspace, parse_plan({"steps": [{"type": "command", "command": "npm test"}]}))

    fix_entries = [e for e in report.log if e.type == "file_edit" and e.action_label == "AUTO-FIX"]
    assert len(fix_entries) == 1
    if applied:
        assert fix_entries[0].status == "ok"
        assert report.run.files[".storybook/preview.ts"] == "export default {};"
    else:
        assert fix_entries[0].status == "skipped"
        assert fix_entries[0].message.startswith("Rejected:")
        assert ".storybook/preview.ts" not in report.run.files


# ==================== Promotion outcomes ====================

def test_failed_run_check_blocks_promotion(sandbox_manager, history, fake_runner, store, node_workspace):
    fake_runner.script("npm run start", CommandResult(exit_code=1, stderr="Error: boom"))
    executor = make_executor(sandbox_manager, history)

    report = executor.execute(node_workspace, edit_and_test_plan())

    assert report.success is False
    assert report.promoted is False
    assert report.message == "Application failed to run. Please fix errors before applying changes."
    assert any(c.kind == "critical" for c in report.run.conflicts)
    assert store.read_file("ws", "src/a.ts") is None
    assert history.can_undo("ws") is False


def test_project_without_run_entry_is_promoted(sandbox_manager, history, fake_runner, store):
    """A package with only a test script has nothing to start; the run check is not a failure."""
    store.write_file("ws", "package.json", json.dumps({"scripts": {"test": "jest"}}))

    report = make_executor(sandbox_manager, history).execute("ws", edit_and_test_plan())

    assert report.run.checks.run.status == CheckStatus.NOT_CONFIGURED
    assert report.success is True
    assert report.promoted is True
    assert store.read_file("ws", "src/a.ts") == "export const x=1;"
    assert not any(cmd.startswith("npm run dev") or cmd.startswith("node ") for cmd in fake_runner.commands())


def test_drifted_edit_is_skipped(sandbox_manager, history, store, node_workspace):
    store.write_file("ws", "src/a.ts", "const a = 1;")
    plan = parse_plan({
        "steps": [{"type": "file_edit", "path": "src/a.ts", "oldContent": "const b = 9;", "newContent": "x"}],
    })

    report = make_executor(sandbox_manager, history).execute(node_workspace, plan)

    assert report.log[0].status == "skipped"
    assert report.files_edited == []
    assert "1 edit(s) skipped (file changed since planning)." in report.summary
    assert store.read_file("ws", "src/a.ts") == "const a = 1;"


# ==================== Safe-Edit ====================

def test_safe_edit_requires_confirmation(sandbox_manager, history, store, fake_runner):
    plan = parse_plan({"steps": [{"type": "file_edit", "path": ".env", "newContent": "KEY=1"}]})
    executor = make_executor(sandbox_manager, history)

    result = executor.execute("ws", plan, safe_edit=True)

    assert isinstance(result, ConfirmationRequest)
    assert result.to_dict() == {"needProtectedConfirmation": True, "protectedPaths": [".env"]}
    assert store.read_file("ws", ".env") is None
    assert fake_runner.calls == []


def test_safe_edit_confirmed_paths_proceed(sandbox_manager, history, store):
    plan = parse_plan({"steps": [{"type": "file_edit", "path": ".env", "newContent": "KEY=1"}]})
    executor = make_executor(sandbox_manager, history)

    report = executor.execute("ws", plan, safe_edit=True, confirmed_paths=[".env"])

    assert isinstance(report, ExecutionReport)
    assert store.read_file("ws", ".env") == "KEY=1"


def test_protected_paths_ignored_without_safe_edit(sandbox_manager, history, store):
    plan = parse_plan({"steps": [{"type": "file_edit", "path": ".env", "newContent": "KEY=1"}]})
    report = make_executor(sandbox_manager, history).execute("ws", plan)
    assert report.promoted is True


def test_safe_edit_max_files(sandbox_manager, history):
    plan = parse_plan({
        "steps": [{"type": "file_edit", "path": f"src/f{i}.ts", "newContent": "x"} for i in range(3)],
    })
    executor = make_executor(sandbox_manager, history, safe_edit_max_files=2)

    with pytest.raises(PolicyDeniedError):
        executor.execute("ws", plan, safe_edit=True)


# ==================== Cancellation ====================

def test_cancelled_before_start(sandbox_manager, history, store):
    cancel = threading.Event()
    cancel.set()

    report = make_executor(sandbox_manager, history).execute("ws", edit_and_test_plan(), cancel_event=cancel)

    assert report.success is False
    assert report.message == "Execution cancelled"
    assert store.read_file("ws", "src/a.ts") is None


class CancellingRunner:
    """Sets the cancel event while `command` runs, as a client disconnect would."""

    def __init__(self, event, command, result):
        self.event = event
        self.command = command
        self.result = result
        self.commands = []

    def run(self, command, cwd, timeout_ms=None, cancel_event=None, env=None):
        self.commands.append(command)
        if command == self.command:
            self.event.set()
            return self.result
        return CommandResult(exit_code=0, stdout="ok")


def test_cancel_during_last_command_rejects_run(store, history, tmp_path, node_workspace):
    """The kill lands in the final step: no repair, no checks, nothing promoted."""
    cancel = threading.Event()
    runner = CancellingRunner(cancel, "npm test", FAILING_TEST)
    manager = SandboxManager(store=store, runner=runner, base_dir=tmp_path / "sandboxes")
    proposer = RecordingProposer(FileEditStep(path="src/a.ts", new_content="patched"))

    report = make_executor(manager, history, proposer).execute(
        node_workspace, edit_and_test_plan(), cancel_event=cancel
    )

    assert report.success is False
    assert report.promoted is False
    assert report.message == "Execution cancelled"
    assert report.run.status == SandboxStatus.REJECTED
    assert report.log[-1].message == "Execution cancelled"
    assert proposer.contexts == []
    assert runner.commands == ["npm test"]
    assert store.read_file("ws", "src/a.ts") is None
    assert history.can_undo("ws") is False


def test_cancel_during_checks_rejects_run(store, history, tmp_path, node_workspace):
    cancel = threading.Event()
    runner = CancellingRunner(cancel, "npm run start", CommandResult(exit_code=None, error_message="Command cancelled"))
    manager = SandboxManager(store=store, runner=runner, base_dir=tmp_path / "sandboxes")

    report = make_executor(manager, history).execute(node_workspace, edit_and_test_plan(), cancel_event=cancel)

    assert "npm run start" in runner.commands
    assert report.success is False
    assert report.run.status == SandboxStatus.REJECTED
    assert store.read_file("ws", "src/a.ts") is None
    assert history.can_undo("ws") is False


# ==================== Log & wire shape ====================

def test_log_entries_and_summary(sandbox_manager, history, node_workspace):
    plan = parse_plan({
        "steps": [
            {"type": "file_edit", "path": "src/a.ts", "newContent": "a"},
            {"type": "command", "command": "npm install"},
            {"type": "command", "command": "npm test"},
        ],
        "summary": "Add module a.",
    })

    report = make_executor(sandbox_manager, history).execute(node_workspace, plan)

    edit_entry, install_entry, test_entry = report.log
    assert edit_entry.message == "Created src/a.ts"
    assert edit_entry.action_label == "EDIT"
    assert install_entry.action_label == "CMD-SETUP"
    assert install_entry.status_line == "npm install - success (OK)"
    assert test_entry.command_kind == "test"
    assert report.summary == "Add module a. Files edited: 1. Commands: 2 succeeded, 0 failed. Tests: 1 passed."


def test_report_to_dict(sandbox_manager, history, node_workspace):
    report = make_executor(sandbox_manager, history).execute(node_workspace, edit_and_test_plan())
    data = report.to_dict()

    assert set(data) >= {"success", "filesEdited", "log", "conflicts", "sandboxRunId", "sandboxChecks", "promoted", "summary"}
    assert data["filesEdited"] == ["src/a.ts"]
    assert data["sandboxChecks"]["run"]["status"] == "passed"
    assert data["log"][0]["stepIndex"] == 0
    assert data["log"][1]["commandStatus"] == "success"
