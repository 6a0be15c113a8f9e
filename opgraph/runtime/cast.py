"""Element type conversion through the graph runtime's Cast operation."""

from __future__ import annotations

import threading
from typing import Any

import numpy as np

from .dtypes import DataType
from .graph import Graph, OpSpec, Output
from .session import Session
from .tensor import as_array, data_type_of


class CastContext:
    """Owns a private graph and session that convert arrays between element types.

    One placeholder/Cast pair is added per (source, target) type pair and
    reused afterwards. All conversions serialize on the context's lock.
    """

    def __init__(self) -> None:
        self._graph = Graph()
        self._session = Session(self._graph)
        self._pairs: dict[tuple[DataType, DataType], tuple[Output, Output]] = {}
        self._lock = threading.Lock()

    def cast(self, value: Any, dtype: DataType) -> np.ndarray:
        """Convert value to an array of dtype."""
        array = as_array(value)
        src = data_type_of(array)
        if src == dtype:
            return array
        with self._lock:
            inp, out = self._pair(src, dtype)
            return self._session.run({inp: array}, [out])[0]

    def _pair(self, src: DataType, dst: DataType) -> tuple[Output, Output]:
        pair = self._pairs.get((src, dst))
        if pair is None:
            inp = self._graph.add_operation(OpSpec(
                type="Placeholder",
                name=f"castInp_{int(src)}_{int(dst)}",
                attrs={"dtype": src},
            )).output(0)
            out = self._graph.add_operation(OpSpec(
                type="Cast",
                name=f"castOut_{int(src)}_{int(dst)}",
                inputs=[inp],
                attrs={"DstT": dst},
            )).output(0)
            pair = self._pairs[(src, dst)] = (inp, out)
        return pair

    def close(self) -> None:
        self._session.close()


_default: CastContext | None = None
_default_lock = threading.Lock()


def default_cast_context() -> CastContext:
    """Process-wide CastContext, created on first use."""
    global _default
    with _default_lock:
        if _default is None:
            _default = CastContext()
        return _default


def cast_tensor(dtype: DataType, value: Any, context: CastContext | None = None) -> np.ndarray:
    """Convert value to dtype with context, or the default context."""
    return (context or default_cast_context()).cast(value, dtype)
