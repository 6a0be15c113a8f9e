"""Possibly partially known tensor shapes."""

from __future__ import annotations

from typing import Iterable

from opgraph.errors import InvalidArgumentError


class Shape:
    """Shape of a tensor produced by an operation.

    ``dims is None`` means the number of dimensions is unknown, a dimension
    of -1 means the size of that dimension is unknown.
    """

    __slots__ = ("_dims",)

    def __init__(self, dims: Iterable[int] | None = None):
        self._dims = None if dims is None else tuple(int(d) for d in dims)

    @property
    def dims(self) -> tuple[int, ...] | None:
        return self._dims

    @property
    def num_dimensions(self) -> int:
        """Number of dimensions, or -1 if unknown."""
        if self._dims is None:
            return -1
        return len(self._dims)

    def size(self, dim: int) -> int:
        """Size of the dim-th dimension, -1 if unknown.

        Negative values of dim count from the last dimension.
        """
        if self._dims is None:
            return -1
        if dim < 0:
            if not self._dims:
                return 0
            dim += len(self._dims)
        if dim < 0 or dim >= len(self._dims):
            return -1
        return self._dims[dim]

    @property
    def is_fully_specified(self) -> bool:
        if self._dims is None:
            return False
        return all(d >= 0 for d in self._dims)

    def to_list(self) -> list[int]:
        if self._dims is None:
            raise InvalidArgumentError(
                "cannot create a list for a Shape with an unknown number of dimensions"
            )
        return list(self._dims)

    def must_list(self) -> list[int]:
        """Shape as a list of sizes, raising if anything is unknown."""
        dims = self.to_list()
        if any(d < 0 for d in dims):
            raise InvalidArgumentError(f"shape has unknown dimensions: {self}")
        return dims

    def num_elements(self) -> int:
        count = 1
        for d in self.must_list():
            count *= d
        return count

    def is_compatible_with(self, other: Shape) -> bool:
        if self._dims is None or other._dims is None:
            return True
        if len(self._dims) != len(other._dims):
            return False
        return all(a < 0 or b < 0 or a == b for a, b in zip(self._dims, other._dims))

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Shape):
            return NotImplemented
        return self._dims == other._dims

    def __hash__(self) -> int:
        return hash(self._dims)

    def __str__(self) -> str:
        if self._dims is None:
            return "?"
        return "[" + ", ".join("?" if d < 0 else str(d) for d in self._dims) + "]"

    def __repr__(self) -> str:
        return f"Shape({self})"


def make_shape(*dims: int) -> Shape:
    """Shape with the given dimension sizes (-1 marks an unknown size)."""
    return Shape(dims)


def scalar_shape() -> Shape:
    return Shape(())


def unknown_shape() -> Shape:
    return Shape(None)
