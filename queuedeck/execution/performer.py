# queuedeck/execution/performer.py
import asyncio
import importlib
import inspect
from typing import Any, Callable, Mapping

from queuedeck.common.exceptions import JobLoadError
from queuedeck.common.job import Job

Handler = Callable[[Job], Any]


def resolve_handler(handlers: Mapping[str, Any], name: str) -> Handler:
    """
    Look up the handler for a job name.

    Registry values are callables or "module:function" import strings.
    """
    target = handlers.get(name)
    if target is None:
        raise JobLoadError(f"No handler registered for job name '{name}'")
    if callable(target):
        return target

    module_name, _, func_name = str(target).partition(":")
    try:
        module = importlib.import_module(module_name)
        return getattr(module, func_name)
    except (ImportError, AttributeError, ValueError) as e:
        raise JobLoadError(f"Could not load job target: {target}") from e


def perform_job(handler: Handler, job: Job) -> Any:
    """Runs the handler for one job; coroutine handlers get their own event loop."""
    if inspect.iscoroutinefunction(handler):
        return asyncio.run(handler(job))
    result = handler(job)
    if inspect.isawaitable(result):
        return asyncio.run(_await(result))
    return result


async def _await(awaitable):
    return await awaitable
