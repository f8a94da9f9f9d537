import asyncio
import logging
from collections.abc import Callable

from fastapi import FastAPI

_log = logging.getLogger("ooilo.lifecycle")


def register_startup(app: FastAPI) -> Callable[[Callable], Callable]:
    """
    Register a startup hook without using FastAPI's deprecated @on_event API.
    Usage:
        @register_startup(app)
        async def _startup(): ...
    """
    def decorator(func: Callable) -> Callable:
        app.router.on_startup.append(func)
        return func
    return decorator


def register_shutdown(app: FastAPI) -> Callable[[Callable], Callable]:
    def decorator(func: Callable) -> Callable:
        app.router.on_shutdown.append(func)
        return func
    return decorator


def run_periodic(app: FastAPI, interval_secs: float, func: Callable[[], object], name: str) -> None:
    """
    Run a blocking ``func`` every ``interval_secs`` on a worker thread for
    the lifetime of the app. A non-positive interval disables the timer.
    Failures are logged and the loop keeps going.
    """
    if interval_secs <= 0:
        return
    state: dict[str, asyncio.Task] = {}

    async def _loop():
        while True:
            await asyncio.sleep(interval_secs)
            try:
                await asyncio.to_thread(func)
            except Exception:
                _log.exception("periodic task %s failed", name)

    @register_startup(app)
    async def _start():
        state["task"] = asyncio.create_task(_loop(), name=name)

    @register_shutdown(app)
    async def _stop():
        task = state.pop("task", None)
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
