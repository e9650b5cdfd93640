import asyncio
import logging
from typing import Callable, Protocol, TypeVar

from zk.exception import ZKErrorResponse  # type: ignore

from backend.config import TEARDOWN_TIMEOUT_SECONDS, TERMINAL_DEADLINE_SECONDS
from backend.errors import (
    ConnectFailure,
    DeviceTimeout,
    OperationFailure,
    UnsupportedOperation,
    ZKControlError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class TerminalTransport(Protocol):
    def connect(self) -> None: ...

    def disconnect(self) -> None: ...

    def destroy(self) -> None: ...


def _message(exc: BaseException) -> str:
    return str(exc) or exc.__class__.__name__


class ConnectionManager:
    """
    One transport session per logical operation against the terminal.

    The terminal's protocol misbehaves when several operations share a session,
    so sessions are never pooled. A deadline races connect + operation; when it
    wins, the session is force-destroyed, since a graceful close on a wedged
    session can hang as well.
    """

    def __init__(
        self,
        session_factory: Callable[[], TerminalTransport],
        *,
        default_deadline: float = TERMINAL_DEADLINE_SECONDS,
        teardown_timeout: float = TEARDOWN_TIMEOUT_SECONDS,
    ):
        self._session_factory = session_factory
        self.default_deadline = default_deadline
        self.teardown_timeout = teardown_timeout

    async def run(self, operation: Callable[[TerminalTransport], T], deadline: float | None = None) -> T:
        limit = self.default_deadline if deadline is None else deadline
        session = self._session_factory()
        state = {"connected": False}

        def _call() -> T:
            try:
                session.connect()
            except Exception as e:
                raise ConnectFailure(f"No se pudo conectar al terminal: {_message(e)}") from e
            state["connected"] = True
            try:
                return operation(session)
            except ZKControlError:
                raise
            except ZKErrorResponse as e:
                raise UnsupportedOperation(_message(e)) from e
            except Exception as e:
                raise OperationFailure(_message(e)) from e

        try:
            result = await asyncio.wait_for(asyncio.to_thread(_call), timeout=limit)
        except asyncio.TimeoutError:
            logger.warning("Terminal operation exceeded %.1fs; destroying transport", limit)
            self._destroy(session)
            raise DeviceTimeout(f"Timeout: el terminal no respondio en {limit:.0f}s")
        except asyncio.CancelledError:
            self._destroy(session)
            raise
        except Exception:
            await self._teardown(session, state["connected"])
            raise

        await self._teardown(session, state["connected"])
        return result

    async def _teardown(self, session: TerminalTransport, connected: bool) -> None:
        if not connected:
            self._destroy(session)
            return
        try:
            await asyncio.wait_for(asyncio.to_thread(session.disconnect), timeout=self.teardown_timeout)
        except Exception as e:
            logger.warning("Graceful disconnect failed (%s); destroying transport", _message(e))
            self._destroy(session)

    def _destroy(self, session: TerminalTransport) -> None:
        try:
            session.destroy()
        except Exception as e:
            logger.warning("Transport destroy failed: %s", _message(e))
