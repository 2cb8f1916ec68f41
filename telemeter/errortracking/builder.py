"""Normalization of exceptions into ``$exception`` event properties."""

from typing import Any, Literal

from pydantic import BaseModel, Field

from telemeter.core.platform import sdk_properties
from telemeter.errortracking.stacktrace import (
    MAX_STACK_FRAMES,
    StackFrame,
    frames_from_traceback,
    parse_stack_text,
)

EXCEPTION_EVENT = "$exception"

MAX_EXCEPTION_DEPTH = 4
MAX_EXCEPTIONS = 50

EXCEPTION_SOURCE = "python_sdk"
MECHANISM_SOURCE = "python"
HANDLED_MECHANISM = "generic"

UNKNOWN_EXCEPTION = "UnknownException"
UNHANDLED_EXCEPTION = "UnhandledException"


class Mechanism(BaseModel):
    type: str
    handled: bool
    source: str = MECHANISM_SOURCE
    synthetic: bool = False

    model_config = {"extra": "forbid", "frozen": True}


class StackTrace(BaseModel):
    frames: list[StackFrame] = Field(default_factory=list)
    type: Literal["raw"] = "raw"

    model_config = {"extra": "forbid", "frozen": True}


class ExceptionRecord(BaseModel):
    """One exception of a captured chain."""

    type: str
    value: str
    mechanism: Mechanism
    stacktrace: StackTrace

    model_config = {"extra": "forbid", "frozen": True}

    def to_wire(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "value": self.value,
            "mechanism": self.mechanism.model_dump(),
            "stacktrace": {
                "frames": [frame.to_wire() for frame in self.stacktrace.frames],
                "type": self.stacktrace.type,
            },
        }


def exception_type_name(exc: BaseException) -> str:
    cls = type(exc)
    if cls.__module__ in ("builtins", "__main__"):
        return cls.__qualname__
    return f"{cls.__module__}.{cls.__qualname__}"


def _children(exc: BaseException) -> list[BaseException]:
    """Direct causes of exc, in the order they should be reported."""
    children: list[BaseException] = []
    if isinstance(exc, BaseExceptionGroup):
        children.extend(e for e in exc.exceptions if e is not None)
    cause = exc.__cause__
    if cause is None and not exc.__suppress_context__:
        cause = exc.__context__
    if cause is not None:
        children.append(cause)
    return children


def walk_exception_chain(
    exc: BaseException,
    max_depth: int = MAX_EXCEPTION_DEPTH,
    max_exceptions: int = MAX_EXCEPTIONS,
) -> list[BaseException]:
    """Depth-first walk of the cause graph starting at ``exc``.

    ``exc`` is level 1; exceptions below ``max_depth`` levels are not
    visited and at most ``max_exceptions`` are returned. Each exception
    object is reported once, so cyclic ``__context__`` chains terminate.
    """
    result: list[BaseException] = []
    seen: set[int] = set()
    stack: list[tuple[BaseException, int]] = [(exc, 1)]

    while stack and len(result) < max_exceptions:
        current, depth = stack.pop()
        if id(current) in seen:
            continue
        seen.add(id(current))
        result.append(current)

        if depth >= max_depth:
            continue
        for child in reversed(_children(current)):
            if id(child) not in seen:
                stack.append((child, depth + 1))
    return result


def build_exception_list(
    exc: BaseException,
    handled: bool,
    mechanism_type: str,
    max_depth: int = MAX_EXCEPTION_DEPTH,
    max_exceptions: int = MAX_EXCEPTIONS,
    max_frames: int = MAX_STACK_FRAMES,
) -> list[ExceptionRecord]:
    mechanism = Mechanism(
        type=HANDLED_MECHANISM if handled else mechanism_type,
        handled=handled,
        synthetic=False,
    )
    return [
        ExceptionRecord(
            type=exception_type_name(item),
            value=str(item),
            mechanism=mechanism,
            stacktrace=StackTrace(frames=frames_from_traceback(item.__traceback__, max_frames)),
        )
        for item in walk_exception_chain(exc, max_depth, max_exceptions)
    ]


def _base_properties(type_name: str, message: str, handled: bool) -> dict[str, Any]:
    properties = sdk_properties()
    properties.update(
        {
            "$exception_type": type_name,
            "$exception_message": message,
            "$exception_level": "error",
            "$exception_source": EXCEPTION_SOURCE,
            "$exception_handled": handled,
        }
    )
    return properties


def build_exception_properties(
    exc: BaseException,
    handled: bool,
    mechanism_type: str,
    max_depth: int = MAX_EXCEPTION_DEPTH,
    max_exceptions: int = MAX_EXCEPTIONS,
    max_frames: int = MAX_STACK_FRAMES,
) -> dict[str, Any]:
    """Properties of a ``$exception`` event for a live exception object."""
    properties = _base_properties(exception_type_name(exc), str(exc), handled)
    records = build_exception_list(exc, handled, mechanism_type, max_depth, max_exceptions, max_frames)
    properties["$exception_list"] = [record.to_wire() for record in records]
    return properties


def _looks_like_type_name(candidate: str) -> bool:
    return candidate.endswith(("Exception", "Error")) or "." in candidate


def parse_raw_message(message: str | None) -> tuple[str, str]:
    """Split ``"SomeError: details"`` into type and message.

    The prefix is only taken as a type when it looks like one; otherwise the
    whole text is the message of an UnhandledException.
    """
    if not message:
        return UNKNOWN_EXCEPTION, ""
    message = message.strip()
    head, sep, tail = message.partition(":")
    head = head.strip()
    if sep and head and tail.strip() and " " not in head and _looks_like_type_name(head):
        return head, tail.strip()
    return UNHANDLED_EXCEPTION, message


def build_properties_from_text(
    message: str | None,
    stack_trace: str | None,
    handled: bool,
    mechanism_type: str,
    max_frames: int = MAX_STACK_FRAMES,
) -> dict[str, Any]:
    """Properties of a ``$exception`` event for a (message, stack text) pair."""
    type_name, value = parse_raw_message(message)
    properties = _base_properties(type_name, value, handled)
    record = ExceptionRecord(
        type=type_name,
        value=value,
        mechanism=Mechanism(
            type=HANDLED_MECHANISM if handled else mechanism_type,
            handled=handled,
            synthetic=True,
        ),
        stacktrace=StackTrace(frames=parse_stack_text(stack_trace, max_frames)),
    )
    properties["$exception_list"] = [record.to_wire()]
    return properties
