"""Error sources: where unhandled errors are intercepted.

An ErrorSource owns the global hook it installs. ``register`` installs it
and remembers what was there before; ``unregister`` puts the previous value
back, but only if nobody replaced our hook in the meantime. Previous hooks
are always chained, so the host keeps its normal error output.
"""

import asyncio
import contextlib
import logging
import sys
import threading
import traceback
from types import TracebackType
from typing import Any, Iterator, Literal, Protocol

from telemeter.core.logging import is_own_logger

logger = logging.getLogger("telemeter.errortracking")


class ErrorHandler(Protocol):
    """Receiver of intercepted errors."""

    def on_exception(self, exc: BaseException, mechanism: str) -> None:
        """Structured path: a live exception object."""
        ...

    def on_raw(self, message: str, stack_trace: str | None, mechanism: str) -> None:
        """Raw path: log text and the stack trace text that came with it."""
        ...


class ErrorSource(Protocol):
    """A global error hook that can be installed and removed."""

    name: str

    @property
    def is_registered(self) -> bool: ...

    def register(self, handler: ErrorHandler) -> None: ...

    def unregister(self) -> None: ...


class _BaseErrorSource:
    name = "base"

    def __init__(self) -> None:
        self._handler: ErrorHandler | None = None

    @property
    def is_registered(self) -> bool:
        return self._handler is not None

    def register(self, handler: ErrorHandler) -> None:
        if self._handler is not None:
            raise RuntimeError(f"{self.name} error source is already registered")
        self._handler = handler
        self._install()

    def unregister(self) -> None:
        if self._handler is None:
            return
        try:
            self._uninstall()
        finally:
            self._handler = None

    @contextlib.contextmanager
    def registered(self, handler: ErrorHandler) -> Iterator["_BaseErrorSource"]:
        """Install for the duration of a ``with`` block."""
        self.register(handler)
        try:
            yield self
        finally:
            self.unregister()

    def _install(self) -> None:
        raise NotImplementedError

    def _uninstall(self) -> None:
        raise NotImplementedError

    def _deliver(self, exc: BaseException) -> None:
        handler = self._handler
        if handler is None or isinstance(exc, KeyboardInterrupt):
            return
        try:
            handler.on_exception(exc, self.name)
        except Exception as e:
            logger.error(f"Exception handler failed in {self.name}: {e}", exc_info=True)


class ExceptHookErrorSource(_BaseErrorSource):
    """Structured source chaining ``sys.excepthook`` and ``threading.excepthook``.

    Args:
        loop: Optional event loop whose exception handler is chained as well,
            catching errors of tasks and callbacks nobody awaited.
    """

    name = "python.excepthook"

    def __init__(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        super().__init__()
        self._loop = loop
        self._prev_sys_hook: Any = None
        self._prev_thread_hook: Any = None
        self._prev_loop_handler: Any = None

    def _install(self) -> None:
        self._prev_sys_hook = sys.excepthook
        self._prev_thread_hook = threading.excepthook
        sys.excepthook = self._sys_hook
        threading.excepthook = self._thread_hook
        if self._loop is not None:
            self._prev_loop_handler = self._loop.get_exception_handler()
            self._loop.set_exception_handler(self._loop_handler)

    def _uninstall(self) -> None:
        if sys.excepthook == self._sys_hook:
            sys.excepthook = self._prev_sys_hook
        else:
            logger.warning("sys.excepthook was replaced by someone else, leaving it in place")
        if threading.excepthook == self._thread_hook:
            threading.excepthook = self._prev_thread_hook
        else:
            logger.warning("threading.excepthook was replaced by someone else, leaving it in place")
        if self._loop is not None and not self._loop.is_closed():
            if self._loop.get_exception_handler() == self._loop_handler:
                self._loop.set_exception_handler(self._prev_loop_handler)
        self._prev_sys_hook = None
        self._prev_thread_hook = None
        self._prev_loop_handler = None

    def _sys_hook(
        self,
        exc_type: type[BaseException],
        exc: BaseException,
        tb: TracebackType | None,
    ) -> None:
        if exc is not None:
            self._deliver(exc)
        previous = self._prev_sys_hook or sys.__excepthook__
        previous(exc_type, exc, tb)

    def _thread_hook(self, args: "threading.ExceptHookArgs") -> None:
        if args.exc_value is not None:
            self._deliver(args.exc_value)
        previous = self._prev_thread_hook or threading.__excepthook__
        previous(args)

    def _loop_handler(self, loop: asyncio.AbstractEventLoop, context: dict[str, Any]) -> None:
        exc = context.get("exception")
        if isinstance(exc, BaseException):
            self._deliver(exc)
        if self._prev_loop_handler is not None:
            self._prev_loop_handler(loop, context)
        else:
            loop.default_exception_handler(context)


class _ForwardingLogHandler(logging.Handler):
    def __init__(self, source: "LoggingErrorSource", level: int) -> None:
        super().__init__(level)
        self._source = source

    def emit(self, record: logging.LogRecord) -> None:
        if is_own_logger(record.name):
            return
        self._source._forward(record)


class LoggingErrorSource(_BaseErrorSource):
    """Raw source that listens to log records carrying exception information.

    Every record at ERROR or above that has ``exc_info`` (as produced by
    ``logger.exception``) is forwarded as its message plus the formatted
    traceback text. Records emitted by telemeter itself are ignored.

    Args:
        logger_name: Logger to attach to. Defaults to the root logger.
        level: Minimum record level.
    """

    name = "python.logging"

    def __init__(self, logger_name: str = "", level: int = logging.ERROR) -> None:
        super().__init__()
        self._logger_name = logger_name
        self._level = level
        self._log_handler = _ForwardingLogHandler(self, level)

    def _install(self) -> None:
        logging.getLogger(self._logger_name).addHandler(self._log_handler)

    def _uninstall(self) -> None:
        logging.getLogger(self._logger_name).removeHandler(self._log_handler)

    def _forward(self, record: logging.LogRecord) -> None:
        handler = self._handler
        if handler is None:
            return
        exc_info = record.exc_info
        if exc_info and exc_info[1] is not None:
            exc = exc_info[1]
            message = f"{type(exc).__name__}: {exc}"
            stack = "".join(traceback.format_exception(exc))
        elif record.exc_text:
            message = record.getMessage()
            stack = record.exc_text
        else:
            return
        try:
            handler.on_raw(message, stack, self.name)
        except Exception as e:
            # safe: records of telemeter loggers are not forwarded
            logger.error(f"Raw error handler failed in {self.name}: {e}", exc_info=True)


ErrorSourceMode = Literal["auto", "excepthook", "logging"]


def select_error_source(
    mode: ErrorSourceMode = "auto",
    loop: asyncio.AbstractEventLoop | None = None,
) -> ErrorSource:
    """Pick the error source for this platform.

    The structured excepthook source is preferred; the logging source is
    used where the process hooks cannot be replaced (for example when an
    embedding host owns them) or when explicitly requested.
    """
    if mode == "logging":
        return LoggingErrorSource()
    if mode == "excepthook" or _hooks_replaceable():
        return ExceptHookErrorSource(loop=loop)
    return LoggingErrorSource()


def _hooks_replaceable() -> bool:
    return hasattr(sys, "excepthook") and hasattr(threading, "excepthook")
