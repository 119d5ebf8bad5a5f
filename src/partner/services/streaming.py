import asyncio
from typing import AsyncIterator, Iterable, Iterator, TypeVar

T = TypeVar("T")

_DONE = object()


def iter_as_async(it: Iterable[T]) -> AsyncIterator[T]:
    """Drive a blocking iterator from the event loop, one item per worker hop.

    Items are delivered strictly in production order; the loop stays free
    while the worker thread waits on the network.
    """

    async def gen() -> AsyncIterator[T]:
        iterator: Iterator[T] = iter(it)
        try:
            while True:
                item = await asyncio.to_thread(next, iterator, _DONE)
                if item is _DONE:
                    return
                yield item  # type: ignore[misc]
        finally:
            close = getattr(iterator, "close", None)
            if close is not None:
                close()

    return gen()
