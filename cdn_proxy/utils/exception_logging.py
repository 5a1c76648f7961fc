"""
Exception logging helpers for upstream failures.

httpx wraps the socket or DNS error that actually happened in ``__cause__``
and anyio may raise exception groups; both are unfolded here so the server
log carries the full detail while clients only ever see a generic message.
"""

import logging
from typing import List


def _safe_str(obj) -> str:
    """Convert to string without ever raising."""
    try:
        return str(obj)
    except Exception:
        try:
            return repr(obj)
        except Exception:
            return f"<{type(obj).__name__} object (string conversion failed)>"


def _describe(exception: BaseException) -> str:
    text = _safe_str(exception)
    name = type(exception).__name__
    return f"{name}: {text}" if text else name


def exception_chain(exception: BaseException) -> List[BaseException]:
    """The exception, its causes and the members of any exception groups."""
    seen = set()
    chain: List[BaseException] = []
    pending = [exception]
    while pending:
        current = pending.pop(0)
        if current is None or id(current) in seen:
            continue
        seen.add(id(current))
        chain.append(current)
        pending.extend(getattr(current, "exceptions", None) or ())
        pending.append(current.__cause__ or current.__context__)
    return chain


def format_exception_message(exception: BaseException) -> str:
    """One line describing the exception and everything underneath it."""
    if exception is None:
        return "None"
    parts = [_describe(e) for e in exception_chain(exception)]
    if len(parts) == 1:
        return parts[0]
    return f"{parts[0]} (caused by: {'; '.join(parts[1:])})"


def log_exception_with_details(
    logger: logging.Logger,
    prefix: str,
    exception: BaseException,
    level: int = logging.ERROR,
) -> None:
    """
    Log an exception with its cause chain and traceback.

    Args:
        logger: The logger instance to use
        prefix: Prefix for the log message (e.g., "[Proxy]")
        exception: The exception to log
        level: The logging level to use (default: ERROR)
    """
    try:
        logger.log(
            level,
            f"{prefix} {format_exception_message(exception)}",
            exc_info=exception if exception is not None else False,
        )
    except Exception:
        # Logging must never turn into a second failure of the request
        try:
            logger.log(level, f"{prefix} Exception (logging failed)")
        except Exception:
            pass
