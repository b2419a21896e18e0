"""Document reconstruction for session replay.

Replay is a pure left fold: starting from an empty document, every text
change is spliced in timestamp order. Cursor and selection events do not
touch the text; they only update the transient view state carried next to
the document.

Positions follow the editor's conventions: lines and columns are 1-based,
a column points *before* the character at that index, and positions outside
the document are clamped onto it before an edit is applied.
"""

from __future__ import annotations

import logging
from bisect import bisect_right
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field

from codereplay.models.events import EditorEvent, EventKind, Position, TextRange
from codereplay.replay.timeline import sort_events

logger = logging.getLogger(__name__)


def _normalize_eol(text: str) -> str:
    return text.replace("\r\n", "\n").replace("\r", "\n")


# =============================================================================
# Text buffer
# =============================================================================


class TextDocument:
    """Line-based text buffer supporting range splices."""

    def __init__(self, text: str = "") -> None:
        self._lines: list[str] = _normalize_eol(text).split("\n")

    @property
    def text(self) -> str:
        return "\n".join(self._lines)

    @property
    def line_count(self) -> int:
        return len(self._lines)

    def line_length(self, line_number: int) -> int:
        return len(self._lines[line_number - 1])

    def clear(self) -> None:
        self._lines = [""]

    def copy(self) -> TextDocument:
        clone = TextDocument.__new__(TextDocument)
        clone._lines = list(self._lines)
        return clone

    def clamp(self, line_number: int, column: int) -> tuple[int, int]:
        """Move a position onto the nearest valid position in the document."""
        if line_number < 1:
            return (1, 1)
        if line_number > len(self._lines):
            last = len(self._lines)
            return (last, len(self._lines[last - 1]) + 1)
        max_column = len(self._lines[line_number - 1]) + 1
        return (line_number, min(max(column, 1), max_column))

    def splice(self, text_range: TextRange, text: str) -> None:
        """Replace the span covered by ``text_range`` with ``text``."""
        start = self.clamp(*text_range.start)
        end = self.clamp(*text_range.end)
        if end < start:
            start, end = end, start

        (start_line, start_col), (end_line, end_col) = start, end
        prefix = self._lines[start_line - 1][: start_col - 1]
        suffix = self._lines[end_line - 1][end_col - 1 :]
        self._lines[start_line - 1 : end_line] = (prefix + _normalize_eol(text) + suffix).split("\n")

    def __len__(self) -> int:
        return sum(len(line) for line in self._lines) + len(self._lines) - 1

    def __repr__(self) -> str:
        return f"TextDocument(lines={len(self._lines)}, chars={len(self)})"


# =============================================================================
# Editor state
# =============================================================================


@dataclass(frozen=True)
class DocumentState:
    """Immutable view of the reconstructed editor at one instant."""

    text: str
    cursor: Position | None = None
    selection: TextRange | None = None
    changes_applied: int = 0


@dataclass
class EditorState:
    """Mutable fold accumulator: the document plus the transient view state."""

    document: TextDocument = field(default_factory=TextDocument)
    cursor: Position | None = None
    selection: TextRange | None = None
    changes_applied: int = 0

    def apply(self, event: EditorEvent) -> bool:
        """Fold one event into the state.

        Returns:
            True if the event changed the text or the view state. Incomplete
            events and annotation kinds (pause, run results) return False.
        """
        if not event.is_complete:
            logger.debug(
                "Skipping incomplete event during reconstruction",
                extra={"kind": event.kind.value, "timestamp": event.timestamp},
            )
            return False

        if event.kind is EventKind.TEXT_CHANGE:
            self.document.splice(event.range, event.inserted_text or "")  # type: ignore[arg-type]
            self.changes_applied += 1
            return True
        if event.kind is EventKind.CURSOR_MOVE:
            self.cursor = event.position
            return True
        if event.kind is EventKind.SELECTION_CHANGE:
            self.selection = event.selection
            return True
        return False

    def copy(self) -> EditorState:
        return EditorState(
            document=self.document.copy(),
            cursor=self.cursor,
            selection=self.selection,
            changes_applied=self.changes_applied,
        )

    def reset(self) -> None:
        self.document.clear()
        self.cursor = None
        self.selection = None
        self.changes_applied = 0

    def freeze(self) -> DocumentState:
        return DocumentState(
            text=self.document.text,
            cursor=self.cursor,
            selection=self.selection,
            changes_applied=self.changes_applied,
        )


def apply_event(state: EditorState, event: EditorEvent) -> bool:
    """Fold one event into ``state``; see ``EditorState.apply``."""
    return state.apply(event)


def reconstruct_up_to(events: Iterable[EditorEvent], target_ms: int | float) -> DocumentState:
    """Rebuild the editor state as of ``target_ms``.

    Folds every event whose timestamp is at or before the target, in
    timestamp order (ties keep their original relative order), over an
    empty document.

    Args:
        events: The session's events in any order.
        target_ms: Timestamp to reconstruct at, on the same clock as the events.

    Returns:
        The document text with the latest cursor and selection.
    """
    state = EditorState()
    for event in sort_events(events):
        if event.timestamp > target_ms:
            break
        state.apply(event)
    return state.freeze()


# =============================================================================
# Seek snapshots
# =============================================================================


class SnapshotIndex:
    """Periodic checkpoints of the fold, bounding seek cost.

    A snapshot is taken after every ``interval`` events so restoring the
    state through any index replays at most ``interval`` events on top of a
    copied checkpoint. With ``interval`` of 0 no snapshots are kept and every
    restore folds from the empty document.
    """

    def __init__(self, events: Sequence[EditorEvent], interval: int = 0) -> None:
        self._events = events
        self._interval = max(interval, 0)
        self._counts: list[int] = []
        self._states: list[EditorState] = []

        if self._interval:
            state = EditorState()
            for folded, event in enumerate(events, start=1):
                state.apply(event)
                if folded % self._interval == 0:
                    self._counts.append(folded)
                    self._states.append(state.copy())

        logger.debug(
            f"Built {len(self._states)} replay snapshot(s)",
            extra={"events": len(events), "interval": self._interval},
        )

    @property
    def snapshot_count(self) -> int:
        return len(self._states)

    def state_through(self, index: int) -> EditorState:
        """Return a fresh state with events ``[0, index]`` folded in.

        An ``index`` of -1 yields the empty state.
        """
        count = min(index + 1, len(self._events))
        if count <= 0:
            return EditorState()

        slot = bisect_right(self._counts, count) - 1
        if slot >= 0:
            base = self._counts[slot]
            state = self._states[slot].copy()
        else:
            base = 0
            state = EditorState()

        for event in self._events[base:count]:
            state.apply(event)
        return state


__all__ = [
    "TextDocument",
    "DocumentState",
    "EditorState",
    "apply_event",
    "reconstruct_up_to",
    "SnapshotIndex",
]
