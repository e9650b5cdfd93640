import asyncio
import logging
import threading
from typing import Any

logger = logging.getLogger(__name__)

# Known transient faults raised from the terminal client outside normal await chains.
TRANSIENT_SIGNATURES = (
    "timed out",
    "timeout",
    "connection reset",
    "connection refused",
    "broken pipe",
    "'nonetype' object",
    "unpack requires a buffer",
)
TRANSIENT_TYPES = (TimeoutError, ConnectionError)


def is_transient_fault(exc: BaseException | None, message: str | None = None) -> bool:
    if isinstance(exc, TRANSIENT_TYPES):
        return True
    text = (message or (str(exc) if exc is not None else "")).lower()
    return any(sig in text for sig in TRANSIENT_SIGNATURES)


class CrashGuard:
    """
    Last-resort boundary for failures that escape every call/await chain
    (background threads, orphaned tasks). Transient terminal faults are logged
    as warnings; anything else is logged as an unhandled defect. The process is
    never terminated from here.
    """

    def __init__(self):
        self.absorbed = 0
        self.unhandled = 0
        self._loop: asyncio.AbstractEventLoop | None = None
        self._previous_loop_handler = None
        self._previous_thread_hook = None
        self._installed = False

    def install(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        if self._installed:
            return
        self._loop = loop or asyncio.get_running_loop()
        self._previous_loop_handler = self._loop.get_exception_handler()
        self._loop.set_exception_handler(self._handle_loop_exception)
        self._previous_thread_hook = threading.excepthook
        threading.excepthook = self._handle_thread_exception
        self._installed = True

    def uninstall(self) -> None:
        if not self._installed:
            return
        if self._loop is not None and not self._loop.is_closed():
            self._loop.set_exception_handler(self._previous_loop_handler)
        threading.excepthook = self._previous_thread_hook
        self._loop = None
        self._installed = False

    def handle(self, exc: BaseException | None, message: str | None = None, source: str = "async") -> bool:
        """Logs a stray failure. Returns True when it was classified as transient."""
        if is_transient_fault(exc, message):
            self.absorbed += 1
            logger.warning("[terminal client %s] %s", source, message or exc)
            return True

        self.unhandled += 1
        exc_info = (type(exc), exc, exc.__traceback__) if exc is not None else None
        logger.error("Unhandled %s failure: %s", source, message or exc, exc_info=exc_info)
        return False

    def _handle_loop_exception(self, loop: asyncio.AbstractEventLoop, context: dict[str, Any]) -> None:
        exc = context.get("exception")
        message = str(exc) if exc is not None else context.get("message")
        self.handle(exc, message, source="task")

    def _handle_thread_exception(self, args: threading.ExceptHookArgs) -> None:
        if args.exc_type is SystemExit:
            return
        self.handle(args.exc_value, source=f"thread {args.thread.name if args.thread else '?'}")

    def status(self) -> dict[str, int]:
        return {"absorbed": self.absorbed, "unhandled": self.unhandled}
