"""Unit tests for the message reporter."""

import io
import logging
import sys

import pytest

from slsqp_rc.reporting import (
    VALUE_PLACEHOLDER,
    FatalError,
    MessageReporter,
    SLSQPError,
    format_message,
)


class TestFormatMessage:
    def test_without_value(self):
        assert format_message("error: invalid upper or lower bound vector size") == (
            "error: invalid upper or lower bound vector size"
        )

    @pytest.mark.parametrize("value, text", [(-3, "-3"), (0, "0"), (12, "12")])
    def test_integer_suffix(self, value, text):
        assert format_message("error: invalid meq value:", value) == (
            f"error: invalid meq value: {text}"
        )

    @pytest.mark.parametrize("value", ["abc", float("nan"), float("inf"), object()])
    def test_unformattable_value_uses_placeholder(self, value):
        assert format_message("msg", value) == f"msg {VALUE_PLACEHOLDER}"


class TestMessageReporter:
    def test_writes_line_to_sink(self):
        sink = io.StringIO()
        MessageReporter(sink=sink).report("error: invalid n value:", 0)
        assert sink.getvalue() == "error: invalid n value: 0\n"

    def test_default_sink_follows_redirected_stdout(self, capsys):
        reporter = MessageReporter()
        reporter.report("required accuracy for solution obtained")
        assert capsys.readouterr().out == "required accuracy for solution obtained\n"

    def test_default_fatal_sink_is_stderr(self):
        assert MessageReporter().fatal_sink is sys.stderr

    def test_disabled_sink_is_silent(self, capsys):
        fatal_sink = io.StringIO()
        reporter = MessageReporter(sink=None, fatal_sink=fatal_sink)
        reporter.report("inequality constraints incompatible")
        assert not reporter.enabled
        assert fatal_sink.getvalue() == ""
        captured = capsys.readouterr()
        assert captured.out == captured.err == ""

    def test_fatal_goes_to_fatal_sink_when_disabled(self):
        fatal_sink = io.StringIO()
        reporter = MessageReporter(sink=None, fatal_sink=fatal_sink)
        with pytest.raises(FatalError, match="boom 7"):
            reporter.report("boom", 7, fatal=True)
        assert fatal_sink.getvalue() == "boom 7\n"

    def test_fatal_goes_to_sink_when_enabled(self):
        sink, fatal_sink = io.StringIO(), io.StringIO()
        reporter = MessageReporter(sink=sink, fatal_sink=fatal_sink)
        with pytest.raises(SLSQPError):
            reporter.report("boom", fatal=True)
        assert sink.getvalue() == "boom\n"
        assert fatal_sink.getvalue() == ""

    def test_messages_are_logged(self, caplog):
        reporter = MessageReporter(sink=None, fatal_sink=io.StringIO())
        with caplog.at_level(logging.DEBUG, logger="slsqp_rc.reporting"):
            reporter.report("note", 1)
            with pytest.raises(FatalError):
                reporter.report("fatal note", fatal=True)
        levels = [(r.levelno, r.getMessage()) for r in caplog.records]
        assert (logging.DEBUG, "note 1") in levels
        assert (logging.ERROR, "fatal note") in levels
