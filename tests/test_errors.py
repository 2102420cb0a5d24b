"""Tests for error types and error display utilities."""

from __future__ import annotations

import io
from unittest.mock import MagicMock

import pytest
from rich.console import Console

from iterctl.errors import (
    AgentExecutionError,
    BackupError,
    ConfigError,
    ErrorCategory,
    ErrorInfo,
    InvalidVersionError,
    IterctlError,
    PlanFileError,
    PlanParseError,
    RollbackError,
    classify_exception,
    format_error,
    handle_exception,
    is_debug_mode,
    set_debug_mode,
)


def make_console() -> tuple[Console, io.StringIO]:
    buffer = io.StringIO()
    return Console(file=buffer, force_terminal=False, width=120), buffer


class TestErrorTypes:
    """Tests for the exception hierarchy."""

    @pytest.mark.parametrize(
        "exc_type",
        [ConfigError, PlanFileError, BackupError, PlanParseError, RollbackError],
    )
    def test_all_derive_from_base(self, exc_type: type[Exception]) -> None:
        assert issubclass(exc_type, IterctlError)

    def test_invalid_version_message(self) -> None:
        error = InvalidVersionError(4, 2)
        assert str(error) == "Invalid version number: 4 (available: 1-2)"
        assert error.version == 4
        assert error.available == 2
        assert isinstance(error, ValueError)

    def test_agent_error_keeps_output(self) -> None:
        error = AgentExecutionError("agent exited with code 1", output="traceback...")
        assert str(error) == "agent exited with code 1"
        assert error.output == "traceback..."


class TestDebugMode:
    """Tests for debug mode toggling."""

    def teardown_method(self) -> None:
        set_debug_mode(False)

    def test_toggle(self) -> None:
        set_debug_mode(True)
        assert is_debug_mode()
        set_debug_mode(False)
        assert not is_debug_mode()


class TestClassifyException:
    """Tests for classify_exception."""

    @pytest.mark.parametrize(
        "exc,category",
        [
            (ConfigError("bad"), ErrorCategory.CONFIG),
            (InvalidVersionError(3, 1), ErrorCategory.BACKUP),
            (BackupError("disk full"), ErrorCategory.BACKUP),
            (PlanFileError("failed to read"), ErrorCategory.PLAN),
            (AgentExecutionError("boom"), ErrorCategory.AGENT),
            (PlanParseError("no JSON array"), ErrorCategory.AGENT),
            (RollbackError("reset failed"), ErrorCategory.GIT),
            (FileNotFoundError(2, "No such file", "plan.json"), ErrorCategory.FILE),
            (PermissionError("denied"), ErrorCategory.FILE),
            (RuntimeError("weird"), ErrorCategory.INTERNAL),
        ],
    )
    def test_categories(self, exc: Exception, category: ErrorCategory) -> None:
        error = classify_exception(exc, "replanning")
        assert error.category == category
        assert error.original_error is exc
        assert error.suggestion

    def test_invalid_version_points_to_versions_command(self) -> None:
        error = classify_exception(InvalidVersionError(3, 1))
        assert "iterctl versions" in error.suggestion

    def test_agent_output_in_details(self) -> None:
        error = classify_exception(AgentExecutionError("exit 1", output="stack"), "replanning")
        assert error.details == "stack"
        assert "during replanning" in error.message

    def test_file_not_found_uses_filename(self) -> None:
        error = classify_exception(FileNotFoundError(2, "No such file", "plan.json"), "plan file")
        assert error.message == "Plan file not found: plan.json"


class TestFormatError:
    """Tests for format_error."""

    def teardown_method(self) -> None:
        set_debug_mode(False)

    def test_message_and_suggestion(self) -> None:
        console, buffer = make_console()
        format_error(ErrorInfo(message="It broke", category=ErrorCategory.PLAN, suggestion="Fix it"), console)
        output = buffer.getvalue()
        assert "Error: It broke" in output
        assert "Suggestion: Fix it" in output

    def test_long_details_hidden_without_debug(self) -> None:
        console, buffer = make_console()
        set_debug_mode(False)
        format_error(ErrorInfo(message="x", category=ErrorCategory.AGENT, details="d" * 300), console)
        assert "d" * 300 not in buffer.getvalue()

    def test_debug_hint_without_debug(self) -> None:
        console, buffer = make_console()
        set_debug_mode(False)
        format_error(classify_exception(ValueError("boom")), console)
        assert "ITERCTL_DEBUG=1" in buffer.getvalue()

    def test_stack_trace_in_debug(self) -> None:
        console, buffer = make_console()
        set_debug_mode(True)
        try:
            raise BackupError("disk full")
        except BackupError as e:
            format_error(classify_exception(e), console)
        output = buffer.getvalue()
        assert "Stack trace (debug mode)" in output
        assert "BackupError" in output


class TestHandleException:
    """Tests for handle_exception function."""

    def test_exits_with_code(self) -> None:
        console = MagicMock(spec=Console)
        with pytest.raises(SystemExit) as exc_info:
            handle_exception(console, PlanFileError("failed to read plan.json"))
        assert exc_info.value.code == 1
        console.print.assert_called()

    def test_custom_exit_code(self) -> None:
        console = MagicMock(spec=Console)
        with pytest.raises(SystemExit) as exc_info:
            handle_exception(console, ConfigError("bad"), exit_code=2)
        assert exc_info.value.code == 2

    def test_no_exit(self) -> None:
        console = MagicMock(spec=Console)
        error = handle_exception(console, BackupError("x"), context="replanning", exit_on_error=False)
        assert isinstance(error, ErrorInfo)
        assert error.category == ErrorCategory.BACKUP
