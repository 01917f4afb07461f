"""Bounded-concurrency map over a ThreadPoolExecutor.

Unlike a plain ``executor.map``, a failing item does not stop the others:
each result slot holds either the mapper's return value or the exception it
raised, in input order.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Generic, Optional, TypeVar

InT = TypeVar("InT")
OutT = TypeVar("OutT")


@dataclass(frozen=True)
class ItemResult(Generic[InT, OutT]):
    item: InT
    value: Optional[OutT] = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def map_isolated(
    iterable: Iterable[InT],
    mapper: Callable[[InT], OutT],
    *,
    concurrency: int,
) -> list[ItemResult[InT, OutT]]:
    """Run ``mapper`` over ``iterable`` with at most ``concurrency`` in flight.

    Exceptions raised by ``mapper`` are captured per item (``Exception`` only;
    ``KeyboardInterrupt`` and friends still propagate).
    """

    if not isinstance(concurrency, int) or concurrency < 1:
        raise ValueError("concurrency must be a positive integer")

    if concurrency == 1:
        return [_call(mapper, item) for item in iterable]

    it = enumerate(iterable)
    results: dict[int, ItemResult[InT, OutT]] = {}
    future_to_idx: dict[Future, int] = {}

    def _submit(pool: ThreadPoolExecutor) -> bool:
        try:
            idx, item = next(it)
        except StopIteration:
            return False
        future_to_idx[pool.submit(_call, mapper, item)] = idx
        return True

    with ThreadPoolExecutor(max_workers=concurrency) as pool:
        # Keep the window full without materializing the whole input.
        for _ in range(concurrency):
            if not _submit(pool):
                break
        while future_to_idx:
            done, _pending = wait(future_to_idx, return_when=FIRST_COMPLETED)
            for fut in done:
                idx = future_to_idx.pop(fut)
                results[idx] = fut.result()
                _submit(pool)

    return [results[i] for i in sorted(results)]


def _call(mapper: Callable[[InT], OutT], item: InT) -> ItemResult[InT, OutT]:
    try:
        return ItemResult(item=item, value=mapper(item))
    except Exception as exc:
        return ItemResult(item=item, error=exc)
