import asyncio
import logging
from collections import defaultdict
from typing import Callable, Dict, List, Type

from .events import Event

logger = logging.getLogger(__name__)


class EventBus:
    """
    Typed event-handler registry.

    Handlers are registered per event class; a handler registered for a base
    class (e.g. `Event`) sees every subclass. Plain callables run inline on
    the reader task, coroutine functions are scheduled as tasks. A failing
    handler is logged and never stops dispatch.
    """
    def __init__(self):
        self._handlers: Dict[Type[Event], List[Callable]] = defaultdict(list)
        self._tasks = set()

    def add_handler(self, event_type: Type[Event], handler: Callable) -> None:
        if not (isinstance(event_type, type) and issubclass(event_type, Event)):
            raise TypeError(f"{event_type!r} is not an event class")
        if handler not in self._handlers[event_type]:
            self._handlers[event_type].append(handler)

    def remove_handler(self, event_type: Type[Event], handler: Callable) -> bool:
        handlers = self._handlers.get(event_type)
        if not handlers or handler not in handlers:
            return False
        handlers.remove(handler)
        return True

    def handlers_for(self, event: Event) -> List[Callable]:
        matched = []
        for cls in type(event).__mro__:
            matched.extend(self._handlers.get(cls, ()))
        return matched

    def emit(self, event: Event) -> None:
        for handler in self.handlers_for(event):
            try:
                if asyncio.iscoroutinefunction(handler):
                    task = asyncio.get_running_loop().create_task(handler(event))
                    self._tasks.add(task)
                    task.add_done_callback(self._task_done)
                else:
                    handler(event)
            except Exception as e:
                logger.error(f"Error in handler {handler!r} for {type(event).__name__}: {e}", exc_info=True)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Error in async event handler: {exc}", exc_info=exc)

    def clear(self) -> None:
        self._handlers.clear()
