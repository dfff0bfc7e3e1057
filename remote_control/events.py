import contextlib
from typing import Callable

from pyee.asyncio import AsyncIOEventEmitter

Unsubscribe = Callable[[], None]


def subscribe(emitter: AsyncIOEventEmitter, event: str, handler: Callable) -> Unsubscribe:
    """Register handler and return a callable that removes it again."""
    emitter.on(event, handler)

    def unsubscribe():
        # already gone after remove_all_listeners() on teardown
        with contextlib.suppress(KeyError):
            emitter.remove_listener(event, handler)

    return unsubscribe
