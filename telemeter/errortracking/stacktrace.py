"""Stack frame extraction.

Two sources are supported: a live traceback object (exact file, line,
column, function and module) and stack trace text. Text is either a Python
traceback (``File "x.py", line 3, in f``) or the
``Namespace.Type.Method (args) (at path/File.cs:42)`` line format emitted by
some embedding runtimes. Lines that cannot be parsed degrade to a frame that
only carries the function text.
"""

import itertools
import ntpath
import re
import sysconfig
from types import TracebackType
from typing import Any

from pydantic import BaseModel

MAX_STACK_FRAMES = 50

LANG = "python"
PLATFORM = "custom"

_AT_FILE_MARKER = "(at "

_PY_FRAME_RE = re.compile(
    r'^\s*File "(?P<path>[^"]*)", line (?P<lineno>\d+)(?:, in (?P<function>.+?))?\s*$'
)
_PY_TRACEBACK_HEADER = "Traceback (most recent call last):"

_LIBRARY_PATHS = tuple(
    p
    for p in {
        sysconfig.get_paths().get("stdlib"),
        sysconfig.get_paths().get("platstdlib"),
        sysconfig.get_paths().get("purelib"),
        sysconfig.get_paths().get("platlib"),
    }
    if p
)


class StackFrame(BaseModel):
    """One frame of a captured stack trace, oldest caller first."""

    filename: str | None = None
    abs_path: str | None = None
    function: str | None = None
    module: str | None = None
    lineno: int | None = None
    colno: int | None = None
    in_app: bool | None = None
    lang: str = LANG
    platform: str = PLATFORM

    model_config = {
        "extra": "forbid",
        "frozen": True,
    }

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


def _basename(path: str) -> str:
    # handles both separators regardless of host platform
    return ntpath.basename(path)


def _is_in_app(path: str) -> bool:
    if not path or path.startswith("<"):
        return False
    if "site-packages" in path or "dist-packages" in path:
        return False
    return not any(path.startswith(lib) for lib in _LIBRARY_PATHS)


def _column(tb: TracebackType) -> int | None:
    """1-based column of the instruction that raised, if known."""
    if tb.tb_lasti < 0:
        return None
    try:
        positions = tb.tb_frame.f_code.co_positions()
        _, _, col, _ = next(itertools.islice(positions, tb.tb_lasti // 2, None))
    except (StopIteration, AttributeError, ValueError):
        return None
    return col + 1 if col is not None else None


def frames_from_traceback(
    tb: TracebackType | None, limit: int = MAX_STACK_FRAMES
) -> list[StackFrame]:
    """Build frames from a traceback chain, keeping the ``limit`` innermost."""
    tbs: list[TracebackType] = []
    while tb is not None:
        tbs.append(tb)
        tb = tb.tb_next
    if limit > 0:
        tbs = tbs[-limit:]

    frames = []
    for entry in tbs:
        code = entry.tb_frame.f_code
        path = code.co_filename
        module = entry.tb_frame.f_globals.get("__name__")
        frames.append(
            StackFrame(
                filename=_basename(path) if path else None,
                abs_path=path or None,
                function=getattr(code, "co_qualname", code.co_name),
                module=module if isinstance(module, str) else None,
                lineno=entry.tb_lineno if entry.tb_lineno and entry.tb_lineno > 0 else None,
                colno=_column(entry),
                in_app=_is_in_app(path),
            )
        )
    return frames


def basic_frame(function: str) -> StackFrame:
    return StackFrame(function=function.strip() or None)


def _strip_zeroes(path: str) -> str:
    # "<00000000000000000000000000000000>" marks a frame without a source file
    return "" if path.replace("0", "").lower() == "<>" else path


def _parse_location(text: str) -> tuple[str, int | None]:
    at = text.find(_AT_FILE_MARKER)
    if at == -1:
        return text, None
    start = at + len(_AT_FILE_MARKER)
    end = text.rfind(")")
    if end <= start:
        return text[start:], None
    location = text[start:end]
    path, sep, line = location.rpartition(":")
    if not sep:
        return location, None
    try:
        return path, int(line)
    except ValueError:
        return location, None


def parse_signature_frame(line: str) -> StackFrame:
    """Parse ``Type.Method (args) (at file:line)``; degrade to a basic frame."""
    closing = line.find(")")
    if closing == -1:
        return basic_frame(line)
    try:
        function = line[: closing + 1].strip()
        rest = line[closing + 1 :]
        if _AT_FILE_MARKER not in rest:
            return basic_frame(function)
        path, lineno = _parse_location(rest)
        path = _strip_zeroes(path.strip())
        return StackFrame(
            filename=_basename(path) if path else None,
            abs_path=path or None,
            function=function,
            lineno=lineno if lineno and lineno > 0 else None,
            in_app=_is_in_app(path),
        )
    except Exception:
        return basic_frame(line)


def _parse_python_line(line: str) -> StackFrame | None:
    match = _PY_FRAME_RE.match(line)
    if match is None:
        return None
    path = match.group("path")
    return StackFrame(
        filename=_basename(path) if path else None,
        abs_path=path or None,
        function=match.group("function"),
        lineno=int(match.group("lineno")),
        in_app=_is_in_app(path),
    )


def parse_stack_text(text: str | None, limit: int = MAX_STACK_FRAMES) -> list[StackFrame]:
    """Parse stack trace text into frames, keeping the last ``limit``.

    Python traceback text only yields frames for its ``File ...`` lines;
    source excerpts, caret markers and the final exception line are skipped.
    In any other text every non-empty line becomes a frame.
    """
    if not text or not text.strip():
        return []

    lines = [line for line in text.splitlines() if line.strip()]
    python_mode = _PY_TRACEBACK_HEADER in text or any(_PY_FRAME_RE.match(line) for line in lines)

    frames: list[StackFrame] = []
    for line in lines:
        if python_mode:
            frame = _parse_python_line(line)
            if frame is not None:
                frames.append(frame)
        else:
            frames.append(parse_signature_frame(line.strip()))

    if limit > 0:
        frames = frames[-limit:]
    return frames
