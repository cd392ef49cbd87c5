"""
Helpers for logging and describing exceptions, including exception groups raised
from anyio task groups inside streaming responses.
"""

import logging

# Upper bound for exception text handed back to clients
MAX_DESCRIPTION_LENGTH = 300


def _safe_str(obj) -> str:
    """
    Safely convert an object to string, handling cases where __str__ or __repr__ might fail.

    Args:
        obj: The object to convert to string

    Returns:
        A string representation of the object, falling back to safe alternatives
    """
    try:
        return str(obj)
    except Exception:
        try:
            return repr(obj)
        except Exception:
            return f"<{type(obj).__name__} object (string conversion failed)>"


def _safe_get_exceptions(exception_group) -> list:
    """Return the sub-exceptions of an exception group, or [] if there are none."""
    try:
        return list(getattr(exception_group, "exceptions", None) or [])
    except Exception:
        return []


def find_exception_in_exception_groups(exception: BaseException, target_type):
    """
    Recursively search through an exception and its sub-exceptions to find
    if any exception is of the target type.

    Args:
        exception: The exception to search through
        target_type: The exception type to look for

    Returns:
        The first exception matching the target type, or None if not found
    """
    try:
        if isinstance(exception, target_type):
            return exception

        for sub_exc in _safe_get_exceptions(exception):
            inner_exc = find_exception_in_exception_groups(sub_exc, target_type)
            if inner_exc is not None:
                return inner_exc

        return None
    except Exception:
        return None


def describe_exception(exception: BaseException, max_depth: int = 3) -> str:
    """
    Build a short, single-line description of an exception and its causes.

    Transport libraries usually wrap the OS level error (e.g. a refused
    connection) in a generic one, so the cause chain is walked to surface it.
    No traceback is ever included.

    Args:
        exception: The exception to describe
        max_depth: How many links of the cause chain to include

    Returns:
        e.g. "ConnectError: All connection attempts failed (caused by ConnectionRefusedError: [Errno 111] Connection refused)"
    """
    parts = []
    seen = set()
    current = exception
    while current is not None and id(current) not in seen and len(parts) < max_depth:
        seen.add(id(current))
        text = _safe_str(current).strip()
        part = f"{type(current).__name__}: {text}" if text else type(current).__name__
        if not parts or part != parts[-1]:
            parts.append(part)

        next_exc = current.__cause__ or current.__context__
        if next_exc is None:
            sub_exceptions = _safe_get_exceptions(current)
            next_exc = sub_exceptions[0] if sub_exceptions else None
        current = next_exc

    description = parts[0] if parts else "Unknown error"
    if len(parts) > 1:
        description += " (caused by " + "; ".join(parts[1:]) + ")"
    if len(description) > MAX_DESCRIPTION_LENGTH:
        description = description[: MAX_DESCRIPTION_LENGTH - 3] + "..."
    return description


def log_exception_with_details(
    logger: logging.Logger,
    prefix: str,
    exception: BaseException,
    level: int = logging.ERROR,
) -> None:
    """
    Log an exception with its traceback, expanding exception groups into one
    log record per sub-exception. Never raises, even for broken exception objects.

    Args:
        logger: The logger instance to use
        prefix: Prefix for the log message (e.g., "[HandlerFault]", "[EventLoop]")
        exception: The exception to log
        level: The logging level to use (default: ERROR)
    """
    try:
        safe_prefix = _safe_str(prefix) if prefix is not None else ""
        sub_exceptions = _safe_get_exceptions(exception) if exception is not None else []

        if sub_exceptions:
            logger.log(
                level,
                f"{safe_prefix} Exception with {len(sub_exceptions)} sub-exceptions: {_safe_str(exception)}",
            )
            for i, sub_exc in enumerate(sub_exceptions):
                logger.log(
                    level,
                    f"{safe_prefix} Sub-exception {i + 1}: {type(sub_exc).__name__}: {_safe_str(sub_exc)}",
                    exc_info=sub_exc,
                )
        else:
            logger.log(
                level,
                f"{safe_prefix} Exception: {_safe_str(exception)}",
                exc_info=exception if exception is not None else False,
            )
    except Exception:
        # Last resort, without formatting or traceback
        try:
            logger.log(logging.ERROR, "Exception logging failed")
        except Exception:
            pass
