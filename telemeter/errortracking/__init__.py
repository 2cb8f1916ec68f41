"""Exception capture: error sources, normalization and the capture pipeline."""

from telemeter.errortracking.builder import (
    EXCEPTION_EVENT,
    ExceptionRecord,
    build_exception_properties,
    build_properties_from_text,
    parse_raw_message,
    walk_exception_chain,
)
from telemeter.errortracking.manager import CaptureState, ExceptionManager
from telemeter.errortracking.sources import (
    ErrorHandler,
    ErrorSource,
    ExceptHookErrorSource,
    LoggingErrorSource,
    select_error_source,
)
from telemeter.errortracking.stacktrace import StackFrame, frames_from_traceback, parse_stack_text

__all__ = [
    "CaptureState",
    "EXCEPTION_EVENT",
    "ErrorHandler",
    "ErrorSource",
    "ExceptHookErrorSource",
    "ExceptionManager",
    "ExceptionRecord",
    "LoggingErrorSource",
    "StackFrame",
    "build_exception_properties",
    "build_properties_from_text",
    "frames_from_traceback",
    "parse_raw_message",
    "parse_stack_text",
    "select_error_source",
    "walk_exception_chain",
]
