"""LIFO stack of cleanup actions, run once on completion or interrupt."""

import asyncio
import inspect
import logging
import signal
from dataclasses import dataclass
from typing import Any, Callable


logger = logging.getLogger(__name__)


@dataclass
class _Action:
    description: str
    callback: Callable[..., Any]
    args: tuple


class CleanupStack:
    """Deferred cleanup actions registered as resources are acquired.

    Actions run most-recently-registered first, exactly once per stack, on
    both normal completion and interrupt. A failing action is logged and
    the remaining actions still run.

    Example:
        async with CleanupStack() as cleanup:
            handle = setup_session_trust(...)
            cleanup.push("known_hosts teardown", teardown_session_trust, handle)
    """

    def __init__(self) -> None:
        self._actions: list[_Action] = []
        self._ran = False

    def push(self, description: str, callback: Callable[..., Any], *args: Any) -> None:
        """Register a sync or async callback to run at cleanup time."""
        if self._ran:
            raise RuntimeError("cleanup stack already ran")
        self._actions.append(_Action(description, callback, args))

    def __len__(self) -> int:
        return len(self._actions)

    @property
    def ran(self) -> bool:
        return self._ran

    async def run(self) -> None:
        """Run every registered action in LIFO order. Later calls are no-ops."""
        if self._ran:
            return
        self._ran = True

        while self._actions:
            action = self._actions.pop()
            logger.debug("Cleanup: %s", action.description)
            try:
                result = action.callback(*action.args)
                if inspect.isawaitable(result):
                    # Reason: cleanup must finish even while the operation
                    # task is being cancelled.
                    await asyncio.shield(asyncio.ensure_future(result))
            except asyncio.CancelledError:
                logger.warning("Cleanup interrupted: %s", action.description)
            except Exception as exc:
                logger.warning("Cleanup failed (%s): %s", action.description, exc)

    async def __aenter__(self) -> "CleanupStack":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.run()


def install_interrupt_handlers(task: asyncio.Task) -> Callable[[], None]:
    """Cancel `task` on SIGINT/SIGTERM so its cleanup stack unwinds.

    Args:
        task: The coordinating task of the running operation.

    Returns:
        Callable[[], None]: Restores the default signal handling.
    """
    loop = asyncio.get_running_loop()
    signals = (signal.SIGINT, signal.SIGTERM)

    def _on_signal(signame: str) -> None:
        logger.warning("Received %s, cleaning up", signame)
        task.cancel()

    installed: list[signal.Signals] = []
    for sig in signals:
        try:
            loop.add_signal_handler(sig, _on_signal, sig.name)
            installed.append(sig)
        except (NotImplementedError, RuntimeError):
            # Reason: signal handlers can only be set from the main thread.
            logger.debug("Cannot install handler for %s", sig.name)

    def _restore() -> None:
        for sig in installed:
            loop.remove_signal_handler(sig)

    return _restore


async def run_with_interrupts(coro) -> Any:
    """Run `coro` as a task that operator interrupts cancel cleanly.

    Args:
        coro: Operation coroutine. It is expected to unwind its own
            CleanupStack when cancelled.

    Returns:
        Any: The coroutine's result.

    Raises:
        KeyboardInterrupt: If the operation was cancelled by a signal.
    """
    task = asyncio.ensure_future(coro)
    restore = install_interrupt_handlers(task)
    try:
        return await task
    except asyncio.CancelledError:
        raise KeyboardInterrupt from None
    finally:
        restore()
