"""
Tests for Edit History

Validates:
- Undo/redo round-trip returns the same batch
- can_undo / can_redo flip correctly
- Pushing after undo clears redo
- Depth cap
- Workspaces are independent
"""

from executor import EditBatch, EditEntry, EditHistory, MAX_UNDO_DEPTH


def entries(n=1, tag="v"):
    return [EditEntry(path=f"src/f{i}.ts", old_content=f"{tag}-old-{i}", new_content=f"{tag}-new-{i}") for i in range(n)]


def test_empty_history():
    history = EditHistory()
    assert history.can_undo("ws") is False
    assert history.can_redo("ws") is False
    assert history.pop_undo("ws") is None
    assert history.pop_redo("ws") is None


def test_empty_batch_is_ignored():
    history = EditHistory()
    assert history.push_edit_batch("ws", []) is None
    assert history.can_undo("ws") is False


def test_undo_redo_round_trip():
    """push → undo → redo yields the exact batch originally pushed."""
    history = EditHistory()
    pushed = history.push_edit_batch("ws", entries(2))

    assert history.can_undo("ws") is True
    assert history.can_redo("ws") is False

    undone = history.pop_undo("ws")
    assert undone == pushed
    assert history.can_undo("ws") is False
    assert history.can_redo("ws") is True

    redone = history.pop_redo("ws")
    assert redone == pushed
    assert redone.to_dict() == pushed.to_dict()
    assert history.can_undo("ws") is True
    assert history.can_redo("ws") is False


def test_undo_returns_newest_first():
    history = EditHistory()
    first = history.push_edit_batch("ws", entries(1, "a"))
    second = history.push_edit_batch("ws", entries(1, "b"))

    assert history.pop_undo("ws") == second
    assert history.pop_undo("ws") == first


def test_push_after_undo_clears_redo():
    history = EditHistory()
    history.push_edit_batch("ws", entries(1, "a"))
    history.pop_undo("ws")
    assert history.can_redo("ws") is True

    history.push_edit_batch("ws", entries(1, "b"))
    assert history.can_redo("ws") is False


def test_depth_is_capped():
    history = EditHistory()
    for i in range(MAX_UNDO_DEPTH + 5):
        history.push_edit_batch("ws", entries(1, f"batch{i}"))

    popped = []
    while history.can_undo("ws"):
        popped.append(history.pop_undo("ws"))

    assert len(popped) == MAX_UNDO_DEPTH
    # Oldest batches were dropped
    assert popped[-1].entries[0].old_content == "batch5-old-0"


def test_workspaces_are_independent():
    history = EditHistory()
    history.push_edit_batch("ws-a", entries(1))
    assert history.can_undo("ws-a") is True
    assert history.can_undo("ws-b") is False


def test_clear():
    history = EditHistory()
    history.push_edit_batch("ws-a", entries(1))
    history.push_edit_batch("ws-b", entries(1))

    history.clear("ws-a")
    assert history.can_undo("ws-a") is False
    assert history.can_undo("ws-b") is True

    history.clear()
    assert history.can_undo("ws-b") is False


def test_batch_wire_shape():
    batch = EditBatch.of(entries(1))
    assert batch.paths == ["src/f0.ts"]
    assert batch.to_dict() == {
        "entries": [{"path": "src/f0.ts", "oldContent": "v-old-0", "newContent": "v-new-0"}],
    }
