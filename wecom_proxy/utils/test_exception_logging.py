import io
import logging

import httpx
import pytest

from wecom_proxy.utils.exception_logging import (
    MAX_DESCRIPTION_LENGTH,
    describe_exception,
    find_exception_in_exception_groups,
    log_exception_with_details,
)


class BrokenStrException(Exception):
    """An exception that breaks when __str__ is called."""

    def __str__(self):
        raise RuntimeError("Cannot convert to string!")

    def __repr__(self):
        return "BrokenStrException(cannot convert to string)"


class MarkerError(Exception):
    pass


@pytest.fixture
def logger_and_stream():
    stream = io.StringIO()
    logger = logging.getLogger("test_exception_logging")
    logger.handlers = []
    handler = logging.StreamHandler(stream)
    handler.setFormatter(logging.Formatter("%(levelname)s %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.DEBUG)
    logger.propagate = False
    yield logger, stream
    logger.handlers = []


class TestDescribeException:
    def test_plain_exception(self):
        assert describe_exception(ValueError("bad value")) == "ValueError: bad value"

    def test_exception_without_message(self):
        assert describe_exception(TimeoutError()) == "TimeoutError"

    def test_cause_chain_is_included(self):
        try:
            try:
                raise ConnectionRefusedError(111, "Connection refused")
            except ConnectionRefusedError as inner:
                raise httpx.ConnectError("All connection attempts failed") from inner
        except httpx.ConnectError as exc:
            description = describe_exception(exc)

        assert description.startswith("ConnectError: All connection attempts failed")
        assert "caused by ConnectionRefusedError" in description
        assert "Connection refused" in description

    def test_exception_group_is_unwrapped(self):
        group = ExceptionGroup("attempts failed", [OSError("no route to host")])
        description = describe_exception(group)
        assert "OSError: no route to host" in description

    def test_depth_is_limited(self):
        exc = ValueError("level 0")
        current = exc
        for level in range(1, 10):
            cause = ValueError(f"level {level}")
            current.__cause__ = cause
            current = cause

        description = describe_exception(exc, max_depth=2)
        assert "level 1" in description
        assert "level 2" not in description

    def test_length_is_limited(self):
        description = describe_exception(ValueError("x" * 5000))
        assert len(description) == MAX_DESCRIPTION_LENGTH
        assert description.endswith("...")

    def test_broken_str_does_not_raise(self):
        description = describe_exception(BrokenStrException())
        assert description.startswith("BrokenStrException")

    def test_no_traceback_text(self):
        try:
            raise RuntimeError("boom")
        except RuntimeError as exc:
            description = describe_exception(exc)
        assert "Traceback" not in description
        assert "\n" not in description


class TestFindExceptionInExceptionGroups:
    def test_direct_match(self):
        exc = MarkerError("direct")
        assert find_exception_in_exception_groups(exc, MarkerError) is exc

    def test_nested_match(self):
        marker = MarkerError("nested")
        group = ExceptionGroup(
            "outer", [ValueError("x"), ExceptionGroup("inner", [marker])]
        )
        assert find_exception_in_exception_groups(group, MarkerError) is marker

    def test_no_match(self):
        group = ExceptionGroup("outer", [ValueError("x")])
        assert find_exception_in_exception_groups(group, MarkerError) is None


class TestLogExceptionWithDetails:
    def test_regular_exception(self, logger_and_stream):
        logger, stream = logger_and_stream
        try:
            raise ValueError("regular failure")
        except ValueError as exc:
            log_exception_with_details(logger, "[Test]", exc)

        output = stream.getvalue()
        assert "ERROR [Test] Exception: regular failure" in output
        assert "Traceback" in output

    def test_exception_group_logs_each_sub_exception(self, logger_and_stream):
        logger, stream = logger_and_stream
        group = ExceptionGroup("two failed", [ValueError("first"), KeyError("second")])

        log_exception_with_details(logger, "[Group]", group, level=logging.WARNING)

        output = stream.getvalue()
        assert "Exception with 2 sub-exceptions" in output
        assert "Sub-exception 1: ValueError: first" in output
        assert "Sub-exception 2: KeyError" in output
        assert "WARNING" in output

    def test_broken_exception_does_not_raise(self, logger_and_stream):
        logger, stream = logger_and_stream
        log_exception_with_details(logger, "[Broken]", BrokenStrException())
        assert "[Broken] Exception: BrokenStrException" in stream.getvalue()

    def test_none_exception(self, logger_and_stream):
        logger, stream = logger_and_stream
        log_exception_with_details(logger, "[None]", None)
        assert "[None] Exception: None" in stream.getvalue()
