"""Diagnostic messages for SLSQP sessions.

Messages go to a text stream chosen when the reporter is built. A reporter
with ``sink=None`` is silent, except for fatal messages: those are always
written (to ``fatal_sink`` when there is no regular sink) and then raised as
`FatalError` so that the embedding application decides how to stop.
"""

import logging
import sys
from typing import TextIO

_log = logging.getLogger(__name__)

# Substituted when the integer suffix of a message cannot be formatted
VALUE_PLACEHOLDER = "*****"

_STDOUT = object()


class SLSQPError(Exception):
    """Base class for exceptions raised by slsqp_rc."""


class FatalError(SLSQPError):
    """Raised after a fatal message has been reported."""


def format_message(message: str, value: object = None) -> str:
    """Append an integer suffix to a message.

    Args:
        message: The message text.
        value: Optional value printed after the message as a decimal integer.

    Returns:
        ``message`` alone, or ``message`` and the formatted value separated by
        a space. Values that cannot be converted become `VALUE_PLACEHOLDER`.
    """
    if value is None:
        return message
    try:
        text = str(int(value)).strip()  # type: ignore[call-overload]
    except (TypeError, ValueError, OverflowError):
        text = VALUE_PLACEHOLDER
    return f"{message} {text}"


class MessageReporter:
    """Writes session diagnostics to a text stream.

    The default streams are looked up when the reporter is created, so a
    redirected ``sys.stdout`` or ``sys.stderr`` is honoured.

    Attributes:
        sink: Stream for regular messages, or None to suppress them.
        fatal_sink: Stream used for fatal messages when ``sink`` is None.
    """

    def __init__(
        self,
        sink: TextIO | None | object = _STDOUT,
        fatal_sink: TextIO | None = None,
    ):
        if sink is _STDOUT:
            sink = sys.stdout
        self.sink: TextIO | None = sink  # type: ignore[assignment]
        self.fatal_sink: TextIO = sys.stderr if fatal_sink is None else fatal_sink

    def __repr__(self) -> str:
        return f"MessageReporter(sink={self.sink!r}, fatal_sink={self.fatal_sink!r})"

    @property
    def enabled(self) -> bool:
        return self.sink is not None

    def report(self, message: str, value: object = None, fatal: bool = False) -> None:
        """Report a message.

        Args:
            message: The message to report.
            value: Optional integer printed after the message.
            fatal: If True, the message is always written and `FatalError`
                is raised afterwards.

        Raises:
            FatalError: If ``fatal`` is True.
        """
        text = format_message(message, value)

        if fatal:
            _log.error(text)
        else:
            _log.debug(text)

        if self.sink is not None:
            self._write(self.sink, text)
        elif fatal:
            self._write(self.fatal_sink, text)

        if fatal:
            raise FatalError(text)

    @staticmethod
    def _write(stream: TextIO, text: str) -> None:
        stream.write(text + "\n")
        stream.flush()
