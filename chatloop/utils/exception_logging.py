"""
Helpers for turning exceptions (including exception groups raised by task
groups) into log records and user-facing one-liners without ever raising.
"""

import logging


def _safe_str(obj) -> str:
    try:
        return str(obj)
    except Exception:
        try:
            return repr(obj)
        except Exception:
            return f"<{type(obj).__name__} (string conversion failed)>"


def _sub_exceptions(exception) -> list:
    try:
        return list(getattr(exception, "exceptions", None) or [])
    except Exception:
        return []


def format_exception_message(exception: BaseException) -> str:
    """
    Format an exception as a single line. Exception groups are flattened to
    "<group> (Sub-exceptions: Type: msg; Type: msg)".
    """
    if exception is None:
        return "None"
    message = _safe_str(exception)
    subs = _sub_exceptions(exception)
    if not subs:
        return message or type(exception).__name__
    parts = [f"{type(sub).__name__}: {_safe_str(sub)}" for sub in subs]
    return f"{message} (Sub-exceptions: {'; '.join(parts)})"


def log_exception_with_details(
    logger: logging.Logger,
    prefix: str,
    exception: BaseException,
    level: int = logging.ERROR,
) -> None:
    """
    Log an exception with its traceback; exception groups get one record per
    sub-exception. Logging failures are swallowed.
    """
    try:
        subs = _sub_exceptions(exception)
        if not subs:
            logger.log(
                level,
                f"{prefix} Exception: {format_exception_message(exception)}",
                exc_info=exception,
            )
            return
        logger.log(
            level,
            f"{prefix} Exception with {len(subs)} sub-exceptions: {_safe_str(exception)}",
        )
        for i, sub in enumerate(subs, 1):
            logger.log(
                level,
                f"{prefix} Sub-exception {i}: {type(sub).__name__}: {_safe_str(sub)}",
                exc_info=sub,
            )
    except Exception:
        try:
            logger.log(logging.ERROR, f"{prefix} Exception (logging failed)")
        except Exception:
            pass
