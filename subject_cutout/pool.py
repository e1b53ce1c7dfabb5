from __future__ import annotations

from contextlib import contextmanager
from typing import Dict, Iterator, List, Tuple

import numpy as np

from .config import POOL_MAX_FREE
from .errors import CanvasContextUnavailable

_Key = Tuple[Tuple[int, ...], str]


class BufferPool:
    """
    Reusable scratch buffers keyed by (shape, dtype).

    A buffer is exclusively owned by its borrower between `acquire` and
    `release`. Contents of a reused buffer are unspecified; callers overwrite
    them fully. Use `borrow()` so release happens on every exit path.
    """

    def __init__(self, max_free: int = POOL_MAX_FREE):
        if max_free < 0:
            raise ValueError(f"max_free must be >= 0, got {max_free}")
        self.max_free = max_free
        self._free: Dict[_Key, List[np.ndarray]] = {}
        self._in_use: Dict[int, _Key] = {}

    @staticmethod
    def _key(shape, dtype) -> _Key:
        return tuple(int(s) for s in shape), np.dtype(dtype).str

    def acquire(self, shape, dtype=np.float32) -> np.ndarray:
        key = self._key(shape, dtype)
        bucket = self._free.get(key)
        if bucket:
            buf = bucket.pop()
        else:
            try:
                buf = np.empty(key[0], dtype=np.dtype(dtype))
            except (MemoryError, ValueError) as e:
                raise CanvasContextUnavailable(
                    f"Could not allocate scratch buffer of shape {key[0]}", details={"dtype": key[1]}
                ) from e
        self._in_use[id(buf)] = key
        return buf

    def release(self, buf: np.ndarray) -> None:
        key = self._in_use.pop(id(buf), None)
        if key is None:
            raise ValueError("Buffer was not acquired from this pool (or was already released)")
        if self.free_count < self.max_free:
            self._free.setdefault(key, []).append(buf)

    @contextmanager
    def borrow(self, shape, dtype=np.float32) -> Iterator[np.ndarray]:
        buf = self.acquire(shape, dtype)
        try:
            yield buf
        finally:
            self.release(buf)

    @property
    def in_use(self) -> int:
        return len(self._in_use)

    @property
    def free_count(self) -> int:
        return sum(len(b) for b in self._free.values())

    def clear(self) -> None:
        """Drop all free buffers (buffers in use are unaffected)."""
        self._free.clear()
