from analysis_manager.console import (
    TERMINAL_NO_DATA,
    ConsoleOutputParser,
    Effect,
    MarkerRule,
    MarkerTable,
    MatchKind,
)
from analysis_manager.integrations.ascore import ASCORE_MARKERS
from analysis_manager.integrations.formularity import CALIBRATION_FAILED_MESSAGE, FORMULARITY_MARKERS
from analysis_manager.integrations.icr2ls import ICR2LS_STATUS_MARKERS
from analysis_manager.models import EventKind, RunStatus


PERCENT_TABLE = MarkerTable(
    rules=(MarkerRule(r"Percent Completion\s+(\d+)%", Effect.SET_PROGRESS, kind=MatchKind.REGEX),),
)


def test_progress_never_regresses_across_growing_output():
    parser = ConsoleOutputParser(PERCENT_TABLE)
    status = RunStatus()
    state = None
    text = ""
    observed = []
    for percent in [5, 3, 8, 8, 12]:
        text += f"Percent Completion {percent}%\n"
        _, state = parser.parse(text, state)
        status.update_progress(state.max_progress)
        observed.append(status.percent_complete)

    assert observed == [5, 5, 8, 8, 12]


def test_reparsing_same_text_reports_no_new_events():
    parser = ConsoleOutputParser(PERCENT_TABLE)
    text = "Loading\nPercent Completion 10%\nPercent Completion 20%\n"

    first_events, state = parser.parse(text)
    second_events, state = parser.parse(text, state)

    assert [event.value for event in first_events if event.kind is EventKind.PROGRESS] == [10, 20]
    assert second_events == []
    assert state.max_progress == 20
    assert state.lines_seen == 3


def test_incomplete_trailing_line_waits_for_final_parse():
    parser = ConsoleOutputParser(PERCENT_TABLE)
    text = "Percent Completion 10%\nPercent Completion 4"

    _, state = parser.parse(text)
    assert state.max_progress == 10
    assert state.lines_seen == 1

    _, state = parser.parse(text + "5%", state, final=True)
    assert state.max_progress == 45


def test_generic_error_captures_remaining_lines():
    parser = ConsoleOutputParser(MarkerTable(rules=(), error_prefix="Error running Tool: "))
    text = "Starting\nError: disk full\n  at write_block\n\nretry aborted\n"

    events, state = parser.parse(text, final=True)

    assert state.error_message == "Error running Tool: Error: disk full; at write_block; retry aborted"
    assert events[-1].kind is EventKind.ERROR
    assert events[-1].line_number == 2


def test_unhandled_exception_is_an_error():
    parser = ConsoleOutputParser(MarkerTable(rules=()))
    _, state = parser.parse("Processing\nSystem.IO: Unhandled Exception in reader\n")
    assert state.has_error
    assert "Unhandled Exception" in state.error_message


def test_formularity_grammar():
    parser = ConsoleOutputParser(FORMULARITY_MARKERS)
    text = "\n".join(
        [
            "Loading spectra",
            "Warning: scan 3, no data points found",
            "Calibration failed for scan 4",
            "WARNING: scan 7: no data points found",
            "Nothing to align",
            "",
        ]
    )

    events, state = parser.parse(text)

    assert state.unit_failures == 2
    assert state.terminal_label == TERMINAL_NO_DATA
    assert state.warnings == (CALIBRATION_FAILED_MESSAGE,)
    assert not state.has_error
    kinds = [event.kind for event in events]
    assert kinds.count(EventKind.UNIT_FAILURE) == 2
    assert EventKind.STATE_CHANGE in kinds


def test_formularity_error_marker_uses_prefix():
    parser = ConsoleOutputParser(FORMULARITY_MARKERS)
    _, state = parser.parse("Aligning\nError: CIA database is locked\nStack line\n")
    assert state.error_message == "Error running Formularity: CIA database is locked; Stack line"


def test_ascore_skips_phrp_chatter():
    parser = ConsoleOutputParser(ASCORE_MARKERS)
    text = "Skipping PHRP result 12: missing mods\nPercent Completion 40%\n"

    events, state = parser.parse(text)

    assert state.max_progress == 40
    assert [event.kind for event in events] == [EventKind.PROGRESS]


def test_icr2ls_status_file():
    parser = ConsoleOutputParser(ICR2LS_STATUS_MARKERS)
    text = "\n".join(
        [
            "date=2024-05-01",
            "time=10:32:11",
            "status=running",
            "PercentComplete=45.5",
            "ScansProcessed=120",
            "state=Processing",
            "ErrorMessage=",
            "",
        ]
    )

    events, state = parser.parse(text)

    assert state.max_progress == 45.5
    assert state.units_processed == 120
    assert state.state_label == "processing"
    assert state.warnings == ()
    assert not any(event.kind is EventKind.UNRECOGNIZED for event in events)


def test_icr2ls_error_message_is_a_warning():
    parser = ConsoleOutputParser(ICR2LS_STATUS_MARKERS)
    _, state = parser.parse("state=error\nErrorMessage=Scan 55 could not be read\n")
    assert state.warnings == ("ErrorMessage=Scan 55 could not be read",)
    assert state.state_label == "error"


def test_parse_file_missing_returns_previous_state(tmp_path):
    parser = ConsoleOutputParser(PERCENT_TABLE)
    events, state = parser.parse_file(tmp_path / "absent.txt")
    assert events == []
    assert state.max_progress == 0


def test_generic_error_applies_to_lines_claimed_by_a_rule():
    parser = ConsoleOutputParser(FORMULARITY_MARKERS)
    text = "Loading spectra\nWarning: scan 4 raised an unhandled exception, no data points found\nCleanup\n"

    _, state = parser.parse(text)

    assert state.error_message == (
        "Error running Formularity: Warning: scan 4 raised an unhandled exception, no data points found; Cleanup"
    )
    assert state.unit_failures == 0


def test_icr2ls_status_table_skips_generic_errors():
    parser = ConsoleOutputParser(ICR2LS_STATUS_MARKERS)
    _, state = parser.parse("state=processing\nErrorMessage=Unhandled exception reading scan 9\n")
    assert not state.has_error
    assert state.warnings == ("ErrorMessage=Unhandled exception reading scan 9",)
