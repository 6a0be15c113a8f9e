"""Wire types of graphs and functions and their canonical byte form.

Node inputs are encoded as strings: ``"<node>:<index>"`` for an output of
another node, ``"<arg>"`` for a function argument and ``"^<node>"`` for a
control dependency.
"""

from __future__ import annotations

import base64
import json
from dataclasses import dataclass, field
from typing import Any

from opgraph.errors import InvalidArgumentError

from .attrs import canonical_json, decode_attr, encode_attr
from .dtypes import DataType


@dataclass(frozen=True)
class ArgDef:
    """Name and element type of one function argument or result."""
    name: str
    type: DataType

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "type": self.type.proto_name}

    @classmethod
    def from_dict(cls, obj: dict[str, Any]) -> ArgDef:
        type_name = obj["type"]
        if not type_name.startswith("DT_") or type_name[3:] not in DataType.__members__:
            raise InvalidArgumentError(f"unknown argument type {type_name!r}")
        return cls(name=obj["name"], type=DataType[type_name[3:]])


@dataclass(frozen=True)
class OpSignature:
    """Signature of a function: its call name, arguments and results."""
    name: str
    input_arg: tuple[ArgDef, ...] = ()
    output_arg: tuple[ArgDef, ...] = ()
    description: str = ""
    summary: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "input_arg": [a.to_dict() for a in self.input_arg],
            "output_arg": [a.to_dict() for a in self.output_arg],
            "description": self.description,
            "summary": self.summary,
        }

    @classmethod
    def from_dict(cls, obj: dict[str, Any]) -> OpSignature:
        return cls(
            name=obj["name"],
            input_arg=tuple(ArgDef.from_dict(a) for a in obj.get("input_arg", [])),
            output_arg=tuple(ArgDef.from_dict(a) for a in obj.get("output_arg", [])),
            description=obj.get("description", ""),
            summary=obj.get("summary", ""),
        )


@dataclass(frozen=True)
class NodeDef:
    """Serialized form of one operation."""
    name: str
    op: str
    input: tuple[str, ...] = ()
    attr: dict[str, Any] = field(default_factory=dict)
    device: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "op": self.op,
            "input": list(self.input),
            "attr": {k: encode_attr(v) for k, v in self.attr.items()},
            "device": self.device,
        }

    @classmethod
    def from_dict(cls, obj: dict[str, Any]) -> NodeDef:
        return cls(
            name=obj["name"],
            op=obj["op"],
            input=tuple(obj.get("input", [])),
            attr={k: decode_attr(v) for k, v in obj.get("attr", {}).items()},
            device=obj.get("device", ""),
        )

    @property
    def data_inputs(self) -> list[str]:
        return [i for i in self.input if not i.startswith("^")]

    @property
    def control_inputs(self) -> list[str]:
        return [i[1:] for i in self.input if i.startswith("^")]


@dataclass
class FunctionDef:
    """Serialized form of a function.

    Args:
        signature: Call signature
        node_def: Body operations in execution order
        ret: Result name -> node input string, in output_arg order
        attr: Function attributes as serialized attribute blobs
    """
    signature: OpSignature
    node_def: tuple[NodeDef, ...] = ()
    ret: dict[str, str] = field(default_factory=dict)
    attr: dict[str, bytes] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "signature": self.signature.to_dict(),
            "node_def": [n.to_dict() for n in self.node_def],
            "ret": dict(self.ret),
            "attr": {k: base64.b64encode(v).decode("ascii") for k, v in self.attr.items()},
        }

    @classmethod
    def from_dict(cls, obj: dict[str, Any]) -> FunctionDef:
        return cls(
            signature=OpSignature.from_dict(obj["signature"]),
            node_def=tuple(NodeDef.from_dict(n) for n in obj.get("node_def", [])),
            ret=dict(obj.get("ret", {})),
            attr={k: base64.b64decode(v) for k, v in obj.get("attr", {}).items()},
        )

    def copy(self) -> FunctionDef:
        return FunctionDef(
            signature=self.signature,
            node_def=self.node_def,
            ret=dict(self.ret),
            attr=dict(self.attr),
        )


@dataclass
class GraphDef:
    """Serialized form of a graph together with its function table."""
    node: list[NodeDef] = field(default_factory=list)
    library: list[FunctionDef] = field(default_factory=list)
    gradient: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "node": [n.to_dict() for n in self.node],
            "library": [f.to_dict() for f in self.library],
            "gradient": dict(self.gradient),
        }

    @classmethod
    def from_dict(cls, obj: dict[str, Any]) -> GraphDef:
        return cls(
            node=[NodeDef.from_dict(n) for n in obj.get("node", [])],
            library=[FunctionDef.from_dict(f) for f in obj.get("library", [])],
            gradient=dict(obj.get("gradient", {})),
        )


def marshal(message: Any) -> bytes:
    """Deterministic wire encoding of a FunctionDef, GraphDef or OpSignature."""
    return canonical_json(message.to_dict())


def unmarshal(data: bytes, message_cls: type) -> Any:
    """Parse the wire encoding produced by marshal into message_cls."""
    try:
        obj = json.loads(bytes(data).decode("utf-8"))
        return message_cls.from_dict(obj)
    except (UnicodeDecodeError, json.JSONDecodeError, KeyError, TypeError, ValueError) as err:
        raise InvalidArgumentError(
            f"failed to parse {message_cls.__name__} from {len(data)} bytes: {err}"
        ) from err
