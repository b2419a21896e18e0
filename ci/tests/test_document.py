"""
Document Reconstruction Tests.

Covers the text buffer splice semantics, the event fold and the seek
snapshot index.
"""

from __future__ import annotations

import pytest

from conftest import cursor, insert, random_edit_session
from codereplay.models.events import EditorEvent, EventKind, Position, TextRange
from codereplay.replay.document import (
    EditorState,
    SnapshotIndex,
    TextDocument,
    apply_event,
    reconstruct_up_to,
)


# =============================================================================
# TextDocument
# =============================================================================


class TestTextDocument:
    """Tests for range splicing."""

    def test_empty_document(self) -> None:
        doc = TextDocument()
        assert doc.text == ""
        assert doc.line_count == 1
        assert len(doc) == 0

    def test_insert_into_line(self) -> None:
        doc = TextDocument("hello world")
        doc.splice(TextRange.of(1, 6, 1, 6), ",")
        assert doc.text == "hello, world"

    def test_replace_across_lines(self) -> None:
        doc = TextDocument("one\ntwo\nthree")
        doc.splice(TextRange.of(1, 2, 3, 3), "X")
        assert doc.text == "oXree"
        assert doc.line_count == 1

    def test_insert_newlines_splits_lines(self) -> None:
        doc = TextDocument("ab")
        doc.splice(TextRange.of(1, 2, 1, 2), "\n\n")
        assert doc.text == "a\n\nb"
        assert doc.line_count == 3
        assert doc.line_length(3) == 1

    def test_delete_line_break(self) -> None:
        doc = TextDocument("ab\ncd")
        doc.splice(TextRange.of(1, 3, 2, 1), "")
        assert doc.text == "abcd"

    def test_reversed_range_is_normalized(self) -> None:
        doc = TextDocument("abcdef")
        doc.splice(TextRange.of(1, 5, 1, 2), "")
        assert doc.text == "aef"

    def test_crlf_inserted_text_is_normalized(self) -> None:
        doc = TextDocument()
        doc.splice(TextRange.of(1, 1, 1, 1), "a\r\nb\rc")
        assert doc.text == "a\nb\nc"

    def test_positions_outside_document_are_clamped(self) -> None:
        doc = TextDocument("ab\ncd")
        doc.splice(TextRange.of(9, 9, 9, 9), "!")
        assert doc.text == "ab\ncd!"

        doc.splice(TextRange.of(1, 50, 1, 50), "?")
        assert doc.text == "ab?\ncd!"

    def test_clamp(self) -> None:
        doc = TextDocument("abc\nd")
        assert doc.clamp(0, 5) == (1, 1)
        assert doc.clamp(1, 0) == (1, 1)
        assert doc.clamp(1, 99) == (1, 4)
        assert doc.clamp(7, 1) == (2, 2)

    def test_copy_is_independent(self) -> None:
        doc = TextDocument("abc")
        clone = doc.copy()
        clone.splice(TextRange.of(1, 1, 1, 4), "z")
        assert doc.text == "abc"
        assert clone.text == "z"


# =============================================================================
# Event fold
# =============================================================================


class TestEditorState:
    """Tests for folding single events."""

    def test_text_change_counts(self) -> None:
        state = EditorState()
        assert apply_event(state, insert(0, 1, 1, "hi")) is True
        assert state.document.text == "hi"
        assert state.changes_applied == 1

    def test_cursor_and_selection_do_not_touch_text(self) -> None:
        state = EditorState()
        state.apply(insert(0, 1, 1, "hi"))
        state.apply(cursor(5, 1, 2))
        state.apply(EditorEvent.selection_change(6, TextRange.of(1, 1, 1, 3)))

        assert state.document.text == "hi"
        assert state.cursor == Position(line_number=1, column=2)
        assert state.selection == TextRange.of(1, 1, 1, 3)
        assert state.changes_applied == 1

    def test_incomplete_event_is_skipped(self) -> None:
        state = EditorState()
        truncated = EditorEvent(timestamp=3, kind=EventKind.TEXT_CHANGE, inserted_text="x")
        assert state.apply(truncated) is False
        assert state.document.text == ""

    def test_annotations_are_not_applied(self) -> None:
        state = EditorState()
        assert state.apply(EditorEvent.pause(10, 12000)) is False
        assert state.document.text == ""

    def test_reset(self) -> None:
        state = EditorState()
        state.apply(insert(0, 1, 1, "x"))
        state.apply(cursor(1, 1, 2))
        state.reset()
        assert state.freeze().text == ""
        assert state.cursor is None


class TestReconstructUpTo:
    """Tests for document reconstruction at a timestamp."""

    def test_empty_log(self) -> None:
        assert reconstruct_up_to([], 1000).text == ""

    def test_target_before_first_event(self) -> None:
        events = [insert(100, 1, 1, "a")]
        assert reconstruct_up_to(events, 99).text == ""

    def test_target_is_inclusive(self, abc_events: list[EditorEvent]) -> None:
        assert reconstruct_up_to(abc_events, 1000).text == "ab"
        assert reconstruct_up_to(abc_events, 20000).text == "abc"

    def test_unsorted_input_is_ordered_by_timestamp(self, abc_events: list[EditorEvent]) -> None:
        assert reconstruct_up_to(list(reversed(abc_events)), 20000).text == "abc"

    def test_ties_keep_insertion_order(self) -> None:
        events = [insert(5, 1, 1, "a"), insert(5, 1, 1, "b")]
        assert reconstruct_up_to(events, 5).text == "ba"

    def test_latest_cursor_is_reported(self) -> None:
        events = [insert(0, 1, 1, "ab"), cursor(1, 1, 2), cursor(2, 1, 3)]
        state = reconstruct_up_to(events, 1)
        assert state.cursor == Position(line_number=1, column=2)

    @pytest.mark.parametrize("seed", [1, 7, 42])
    def test_fold_matches_string_splice(self, seed: int) -> None:
        events, expected = random_edit_session(seed)
        changes = [event for event in events if event.kind is EventKind.TEXT_CHANGE]

        assert reconstruct_up_to(events, events[-1].timestamp).text == expected[-1]
        # Re-running the fold on the same input gives the same document
        assert reconstruct_up_to(events, events[-1].timestamp).text == expected[-1]

        for change, text in zip(changes, expected):
            later_same_time = [
                c for c in changes if c.timestamp == change.timestamp and c is not change
            ]
            if not later_same_time:
                assert reconstruct_up_to(events, change.timestamp).text == text


# =============================================================================
# Snapshots
# =============================================================================


class TestSnapshotIndex:
    """Tests for seek snapshots."""

    def test_disabled_keeps_no_snapshots(self, abc_events: list[EditorEvent]) -> None:
        index = SnapshotIndex(abc_events, 0)
        assert index.snapshot_count == 0
        assert index.state_through(2).document.text == "abc"

    def test_empty_state_before_first_event(self, abc_events: list[EditorEvent]) -> None:
        index = SnapshotIndex(abc_events, 1)
        assert index.state_through(-1).document.text == ""

    @pytest.mark.parametrize("interval", [1, 3, 10])
    def test_snapshots_do_not_change_results(self, interval: int) -> None:
        events, _ = random_edit_session(3)
        plain = SnapshotIndex(events, 0)
        snapshotted = SnapshotIndex(events, interval)

        assert snapshotted.snapshot_count == len(events) // interval
        for i in range(-1, len(events)):
            assert snapshotted.state_through(i).freeze() == plain.state_through(i).freeze()

    def test_restored_state_does_not_alias_snapshot(self, abc_events: list[EditorEvent]) -> None:
        index = SnapshotIndex(abc_events, 1)
        state = index.state_through(0)
        state.apply(insert(1, 1, 2, "zzz"))
        assert index.state_through(0).document.text == "a"
