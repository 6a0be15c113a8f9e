"""Function handles and their transmissible byte form."""

from __future__ import annotations

import logging
from typing import Any, BinaryIO

from opgraph.errors import FailedPreconditionError, InvalidArgumentError, NotFoundError

from .attrs import decode_attr_value
from .protos import FunctionDef, OpSignature, marshal, unmarshal

logger = logging.getLogger(__name__)


class Func:
    """Handle on a function definition.

    A Func is created by Graph.as_func, op.build_func or import_func. Handles
    are independent: registering a Func copies its definition into the target
    graph, and deleting the handle afterwards leaves those copies intact.
    """

    def __init__(self, fdef: FunctionDef):
        self._fdef: FunctionDef | None = fdef

    @property
    def definition(self) -> FunctionDef:
        if self._fdef is None:
            raise FailedPreconditionError("Func has been deleted")
        return self._fdef

    @property
    def name(self) -> str:
        """Actual name of the function, including the hash suffix of captured functions."""
        return self.definition.signature.name

    def delete(self) -> None:
        """Release the handle. Graphs holding a copy are not affected."""
        self._fdef = None

    def write_to(self, stream: BinaryIO) -> int:
        """Write the serialized definition to stream and return the byte count."""
        data = self.to_bytes()
        stream.write(data)
        return len(data)

    def to_bytes(self) -> bytes:
        return marshal(self.definition)

    def signature(self) -> OpSignature:
        """Signature parsed back from the exported form."""
        try:
            return unmarshal(self.to_bytes(), FunctionDef).signature
        except InvalidArgumentError as err:
            raise InvalidArgumentError(f"failed to get signature of function {self.name!r}: {err}") from err

    def set_attr_from(self, attr_name: str, blob: bytes) -> None:
        """Set a function attribute from its serialized form.

        A zero-length blob is stored as well and reads back as "no value".
        """
        self.definition.attr[attr_name] = bytes(blob)

    def write_attr_to(self, attr_name: str, stream: BinaryIO) -> int:
        """Write the serialized attribute to stream, nothing for a zero-length value."""
        blob = self._attr_blob(attr_name)
        if len(blob) == 0:
            return 0
        stream.write(blob)
        return len(blob)

    def get_attr(self, attr_name: str) -> Any:
        """Decoded attribute value, None for a zero-length value."""
        return decode_attr_value(self._attr_blob(attr_name))

    def _attr_blob(self, attr_name: str) -> bytes:
        attrs = self.definition.attr
        if attr_name not in attrs:
            raise NotFoundError(f"function {self.name!r} has no attr named {attr_name!r}")
        return attrs[attr_name]

    def __repr__(self) -> str:
        if self._fdef is None:
            return "<Func deleted>"
        return f"<Func {self.name!r}>"


def import_func(data: bytes) -> Func:
    """Create a Func from the bytes written by Func.to_bytes."""
    if len(data) == 0:
        raise InvalidArgumentError("cannot import from empty buffer")
    fdef = unmarshal(data, FunctionDef)
    logger.debug("imported function %s", fdef.signature.name)
    return Func(fdef)
