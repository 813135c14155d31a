"""
Declarative console-output grammars.

Every external tool writes free-text progress in its own, versioned format. An
integration describes its grammar as an ordered table of ``MarkerRule`` entries and
``ConsoleOutputParser`` applies that table to the full text on every call, carrying
the highest progress value forward so that a tool reporting a regression never moves
the run backwards.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import List, Optional, Pattern, Sequence, Tuple, Union

from .models import ConsoleOutputEvent, EventKind


LOGGER = logging.getLogger("analysis_manager.console")

TERMINAL_NO_DATA = "no-data"
TERMINAL_FAILED = "failed"

GENERIC_ERROR_PATTERNS = (
    re.compile(r"^Error[:\s]", re.IGNORECASE),
    re.compile(r"unhandled exception", re.IGNORECASE),
)


class MatchKind(str, Enum):
    PREFIX = "prefix"
    SUBSTRING = "substring"
    REGEX = "regex"


class Effect(str, Enum):
    SET_PROGRESS = "set-progress"
    FLAG_WARNING = "flag-warning"
    FLAG_ERROR = "flag-error"
    FLAG_TERMINAL_STATE = "flag-terminal-state"
    SET_STATE = "set-state"
    SET_UNITS = "set-units"
    FLAG_UNIT_FAILURE = "flag-unit-failure"
    IGNORE = "ignore"


@dataclass(frozen=True)
class MarkerRule:
    """
    One (matcher, effect) entry of a grammar.

    ``value`` supplies a constant for SET_PROGRESS; otherwise the regex ``group``
    is used. ``label`` names the terminal state for FLAG_TERMINAL_STATE and, when
    set, replaces the raw line as warning text.
    """

    pattern: str
    effect: Effect
    kind: MatchKind = MatchKind.SUBSTRING
    ignore_case: bool = True
    value: Optional[float] = None
    group: Union[int, str] = 1
    label: str = ""
    _regex: Optional[Pattern[str]] = field(default=None, init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        if self.kind is MatchKind.REGEX:
            flags = re.IGNORECASE if self.ignore_case else 0
            object.__setattr__(self, "_regex", re.compile(self.pattern, flags))

    def find(self, line: str) -> Optional[str]:
        """Return the captured text when *line* matches, otherwise None."""
        if self.kind is MatchKind.REGEX:
            assert self._regex is not None
            match = self._regex.search(line)
            if match is None:
                return None
            if self._regex.groups == 0:
                return match.group(0)
            return match.group(self.group)

        haystack = line.lower() if self.ignore_case else line
        needle = self.pattern.lower() if self.ignore_case else self.pattern
        if self.kind is MatchKind.PREFIX:
            return line if haystack.lstrip().startswith(needle) else None
        return line if needle in haystack else None


@dataclass(frozen=True)
class MarkerTable:
    """
    Ordered grammar for one tool's output.

    ``generic_errors`` checks every line against ``GENERIC_ERROR_PATTERNS`` after
    the table's own FLAG_ERROR rules. Tables for key=value status files rather
    than console streams turn it off.
    """

    rules: Tuple[MarkerRule, ...]
    error_prefix: str = ""
    generic_errors: bool = True


@dataclass(frozen=True)
class ParserState:
    """Result of the previous parse; ``lines_seen`` counts complete lines already reported."""

    max_progress: float = 0.0
    state_label: Optional[str] = None
    units_processed: int = 0
    unit_failures: int = 0
    warnings: Tuple[str, ...] = ()
    error_message: str = ""
    terminal_label: Optional[str] = None
    lines_seen: int = 0

    @property
    def has_error(self) -> bool:
        return bool(self.error_message)


class ConsoleOutputParser:
    """Apply a ``MarkerTable`` to the current content of a growing console log."""

    def __init__(self, table: MarkerTable) -> None:
        self._table = table

    @property
    def table(self) -> MarkerTable:
        return self._table

    def parse(
        self,
        text: str,
        previous_state: Optional[ParserState] = None,
        final: bool = False,
    ) -> Tuple[List[ConsoleOutputEvent], ParserState]:
        """
        Re-scan *text* and return the events for lines not reported before plus the new state.

        A trailing line without a newline may still be in the middle of being written,
        so it is only considered when *final* is set.
        """
        previous = previous_state or ParserState()
        lines = text.splitlines()
        if lines and not final and not text.endswith(("\n", "\r")):
            lines = lines[:-1]

        events: List[ConsoleOutputEvent] = []
        max_progress = previous.max_progress
        state_label = previous.state_label
        units_processed = previous.units_processed
        unit_failures = 0
        warnings: List[str] = []
        error_message = ""
        terminal_label = previous.terminal_label

        index = 0
        while index < len(lines):
            line = lines[index]
            line_number = index + 1
            is_new = line_number > previous.lines_seen
            stripped = line.strip()
            index += 1
            if not stripped:
                continue

            rule, captured = self._match(stripped)
            if rule is not None and rule.effect is Effect.FLAG_ERROR:
                error_message = self._capture_error(captured or stripped, lines[index:])
                events.append(ConsoleOutputEvent(EventKind.ERROR, error_message, line_number=line_number))
                break
            if self._table.generic_errors and _is_generic_error(stripped):
                error_message = self._capture_error(stripped, lines[index:])
                events.append(ConsoleOutputEvent(EventKind.ERROR, error_message, line_number=line_number))
                break
            if rule is None:
                if is_new:
                    events.append(ConsoleOutputEvent(EventKind.UNRECOGNIZED, stripped, line_number=line_number))
                continue

            effect = rule.effect
            if effect is Effect.IGNORE:
                continue

            if effect is Effect.SET_PROGRESS:
                value = rule.value if rule.value is not None else _to_float(captured)
                if value is None:
                    continue
                max_progress = max(max_progress, min(value, 100.0))
                if is_new:
                    events.append(ConsoleOutputEvent(EventKind.PROGRESS, stripped, max_progress, line_number))
            elif effect is Effect.SET_UNITS:
                value = _to_float(captured)
                if value is None:
                    continue
                units_processed = max(units_processed, int(value))
                if is_new:
                    events.append(ConsoleOutputEvent(EventKind.UNIT_COUNT, stripped, float(units_processed), line_number))
            elif effect is Effect.FLAG_UNIT_FAILURE:
                unit_failures += 1
                if is_new:
                    events.append(ConsoleOutputEvent(EventKind.UNIT_FAILURE, stripped, line_number=line_number))
            elif effect is Effect.FLAG_WARNING:
                message = rule.label or stripped
                if message not in warnings:
                    warnings.append(message)
                if is_new:
                    events.append(ConsoleOutputEvent(EventKind.WARNING, message, line_number=line_number))
            elif effect is Effect.SET_STATE:
                label = (captured or "").strip().lower()
                if label and label != state_label:
                    state_label = label
                    if is_new:
                        events.append(ConsoleOutputEvent(EventKind.STATE_CHANGE, label, line_number=line_number))
            elif effect is Effect.FLAG_TERMINAL_STATE:
                label = rule.label or stripped
                if terminal_label != label:
                    terminal_label = label
                    events.append(ConsoleOutputEvent(EventKind.STATE_CHANGE, label, line_number=line_number))

        new_state = replace(
            previous,
            max_progress=max_progress,
            state_label=state_label,
            units_processed=units_processed,
            unit_failures=unit_failures,
            warnings=tuple(warnings),
            error_message=error_message,
            terminal_label=terminal_label,
            lines_seen=max(previous.lines_seen, len(lines)),
        )
        return events, new_state

    def parse_file(
        self,
        path: Path,
        previous_state: Optional[ParserState] = None,
        final: bool = False,
    ) -> Tuple[List[ConsoleOutputEvent], ParserState]:
        """Parse the file at *path*; a missing file leaves the state unchanged."""
        path = Path(path)
        if not path.exists():
            LOGGER.debug("Console output file not found yet: %s", path)
            return [], previous_state or ParserState()
        text = path.read_text(encoding="utf-8", errors="replace")
        return self.parse(text, previous_state, final=final)

    def _match(self, line: str) -> Tuple[Optional[MarkerRule], Optional[str]]:
        for rule in self._table.rules:
            captured = rule.find(line)
            if captured is not None:
                return rule, captured
        return None, None

    def _capture_error(self, first: str, remaining: Sequence[str]) -> str:
        parts = [first.strip()]
        parts.extend(line.strip() for line in remaining if line.strip())
        return f"{self._table.error_prefix}{'; '.join(parts)}"


def _is_generic_error(line: str) -> bool:
    return any(pattern.search(line) for pattern in GENERIC_ERROR_PATTERNS)


def _to_float(text: Optional[str]) -> Optional[float]:
    if text is None:
        return None
    try:
        return float(text.strip().rstrip("%"))
    except ValueError:
        LOGGER.debug("Ignoring non-numeric marker value %r", text)
        return None
