import logging
from unittest.mock import Mock

import httpx

from cdn_proxy.utils.exception_logging import (
    exception_chain,
    format_exception_message,
    log_exception_with_details,
)


class BrokenStrException(Exception):
    """An exception that breaks when __str__ is called."""

    def __str__(self):
        raise RuntimeError("Cannot convert to string!")

    def __repr__(self):
        return "BrokenStrException(cannot convert to string)"


def _connect_error_with_cause():
    try:
        try:
            raise OSError(111, "Connection refused")
        except OSError as e:
            raise httpx.ConnectError("All connection attempts failed") from e
    except httpx.ConnectError as e:
        return e


class TestFormatExceptionMessage:
    def test_plain_exception(self):
        assert format_exception_message(ValueError("bad")) == "ValueError: bad"

    def test_cause_chain_included(self):
        message = format_exception_message(_connect_error_with_cause())

        assert message.startswith("ConnectError: All connection attempts failed")
        assert "Connection refused" in message

    def test_exception_group_members_included(self):
        group = ExceptionGroup("tasks failed", [ValueError("one"), KeyError("two")])

        message = format_exception_message(group)

        assert "ValueError: one" in message
        assert "KeyError" in message

    def test_broken_str(self):
        assert "BrokenStrException" in format_exception_message(BrokenStrException())

    def test_none(self):
        assert format_exception_message(None) == "None"


def test_exception_chain_handles_cycles():
    first = ValueError("first")
    second = ValueError("second")
    first.__cause__ = second
    second.__cause__ = first

    assert exception_chain(first) == [first, second]


class TestLogExceptionWithDetails:
    def test_logs_full_detail(self, caplog):
        logger = logging.getLogger("test.exception_logging")

        with caplog.at_level(logging.ERROR, logger="test.exception_logging"):
            log_exception_with_details(logger, "[Proxy]", _connect_error_with_cause())

        assert len(caplog.records) == 1
        record = caplog.records[0]
        assert record.getMessage().startswith("[Proxy] ConnectError")
        assert "Connection refused" in record.getMessage()
        assert record.exc_info is not None

    def test_level_respected(self, caplog):
        logger = logging.getLogger("test.exception_logging")

        with caplog.at_level(logging.WARNING, logger="test.exception_logging"):
            log_exception_with_details(logger, "[Proxy]", ValueError("x"), logging.WARNING)

        assert caplog.records[0].levelno == logging.WARNING

    def test_never_raises_when_logger_fails(self):
        logger = Mock()
        logger.log.side_effect = RuntimeError("logger broken")

        log_exception_with_details(logger, "[Proxy]", ValueError("x"))

        assert logger.log.call_count == 2
