"""
Per-entity fan-out over a thread pool.

Each entity is computed independently; a failure is captured per entity
rather than aborting the batch. Results come back in input order, so the
caller's write step (the single serialization point) is deterministic no
matter how the workers interleave.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Callable, Generic, Sequence, TypeVar

logger = logging.getLogger(__name__)

K = TypeVar("K")
R = TypeVar("R")


@dataclass
class FanOutResult(Generic[K, R]):
    """Ordered successes plus the keys that raised."""

    results: list[tuple[K, R]] = field(default_factory=list)
    failures: list[tuple[K, str]] = field(default_factory=list)


def fan_out(
    keys: Sequence[K],
    compute: Callable[[K], R],
    max_workers: int,
    label: str = "entity",
) -> FanOutResult[K, R]:
    """Run ``compute`` for every key, at most ``max_workers`` at a time."""
    slots: dict[int, tuple[bool, object]] = {}

    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        futures = {executor.submit(compute, key): i for i, key in enumerate(keys)}
        for future in as_completed(futures):
            i = futures[future]
            try:
                slots[i] = (True, future.result())
            except Exception as exc:
                logger.warning("Failed to compute %s %r: %s", label, keys[i], exc)
                slots[i] = (False, str(exc))

    out: FanOutResult[K, R] = FanOutResult()
    for i, key in enumerate(keys):
        ok, value = slots[i]
        if ok:
            out.results.append((key, value))  # type: ignore[arg-type]
        else:
            out.failures.append((key, value))  # type: ignore[arg-type]
    return out
