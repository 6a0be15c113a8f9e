"""Exporting a session's graph and variables to a directory and loading it back.

An export directory holds ``saved_model.json``, the graph definition with
its function library and one meta graph per tag-set, and
``variables.safetensors`` with the variable values by node name.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Sequence

from opgraph.config import SessionOptions
from opgraph.errors import InvalidArgumentError, NotFoundError
from opgraph.runtime import DataType, Graph, GraphDef, Session, Shape

from .safetensor_io import SafeTensorLoader, write_safetensors

logger = logging.getLogger(__name__)

MODEL_FILE = "saved_model.json"
VARIABLES_FILE = "variables.safetensors"


@dataclass(frozen=True)
class TensorInfo:
    """Graph tensor bound to a signature input or output.

    Args:
        name: Output name ``"<node>:<index>"``
        dtype: Element type
        shape: Possibly partially known shape
    """
    name: str
    dtype: DataType
    shape: Shape = field(default_factory=Shape)

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "dtype": self.dtype.proto_name, "shape": self.shape.dims}

    @classmethod
    def from_dict(cls, obj: dict[str, Any]) -> TensorInfo:
        return cls(obj["name"], DataType[obj["dtype"][3:]], Shape(obj.get("shape")))


@dataclass(frozen=True)
class Signature:
    """Named entry point of a saved model."""
    inputs: dict[str, TensorInfo] = field(default_factory=dict)
    outputs: dict[str, TensorInfo] = field(default_factory=dict)
    method_name: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "inputs": {k: v.to_dict() for k, v in self.inputs.items()},
            "outputs": {k: v.to_dict() for k, v in self.outputs.items()},
            "method_name": self.method_name,
        }

    @classmethod
    def from_dict(cls, obj: dict[str, Any]) -> Signature:
        return cls(
            inputs={k: TensorInfo.from_dict(v) for k, v in obj.get("inputs", {}).items()},
            outputs={k: TensorInfo.from_dict(v) for k, v in obj.get("outputs", {}).items()},
            method_name=obj.get("method_name", ""),
        )


@dataclass
class SavedModel:
    """Contents of a loaded saved model."""
    session: Session
    graph: Graph
    signatures: dict[str, Signature]


def save_model(
    export_dir: str | Path,
    session: Session,
    tags: Sequence[str],
    signatures: Mapping[str, Signature] | None = None,
) -> Path:
    """
    Export the graph and the variables of session.

    Args:
        export_dir: Output directory, created if missing
        session: Session whose graph and variable values are saved
        tags: Tags identifying the saved graph
        signatures: Named entry points

    Returns:
        Path to the export directory
    """
    if not tags:
        raise InvalidArgumentError("empty tags are not allowed")
    export_dir = Path(export_dir)
    export_dir.mkdir(parents=True, exist_ok=True)

    model = {
        "graph_def": session.graph.to_graph_def().to_dict(),
        "meta_graphs": [{
            "tags": list(tags),
            "signature_def": {k: v.to_dict() for k, v in (signatures or {}).items()},
        }],
    }
    with open(export_dir / MODEL_FILE, 'w') as f:
        json.dump(model, f, indent=2)

    variables = session.variables()
    write_safetensors(export_dir / VARIABLES_FILE, variables)
    logger.info("saved model with %d variables to %s", len(variables), export_dir)
    return export_dir


def _load_model_json(export_dir: Path) -> dict[str, Any]:
    with open(export_dir / MODEL_FILE, 'r') as f:
        return json.load(f)


def _signatures(meta_graph: dict[str, Any]) -> dict[str, Signature]:
    return {k: Signature.from_dict(v) for k, v in meta_graph.get("signature_def", {}).items()}


def load_saved_model(
    export_dir: str | Path,
    tags: Sequence[str],
    options: SessionOptions | None = None,
) -> SavedModel:
    """
    Load a model exported with save_model.

    The tags select one meta graph; its graph is imported into a new Graph
    and a new Session is created with the saved variable values.

    Raises:
        InvalidArgumentError: tags is empty
        NotFoundError: No meta graph matches tags
    """
    if not tags:
        raise InvalidArgumentError(
            "empty tags are not allowed. Use the list_saved_model_details() function to list tags per graph"
        )
    export_dir = Path(export_dir)
    model = _load_model_json(export_dir)

    wanted = set(tags)
    meta_graph = next((m for m in model["meta_graphs"] if set(m["tags"]) == wanted), None)
    if meta_graph is None:
        raise NotFoundError(
            f"could not find meta graph def matching supplied tags: {sorted(wanted)}. "
            "To inspect available tag-sets in the saved model use the list_saved_model_details() function"
        )

    graph = Graph()
    graph.import_graph_def(GraphDef.from_dict(model["graph_def"]))
    session = Session(graph, options)
    variables_path = export_dir / VARIABLES_FILE
    if variables_path.exists():
        loader = SafeTensorLoader(variables_path)
        session.assign_variables({name: loader.load_tensor(name) for name in loader.names()})
    logger.info("loaded model from %s with tags %s", export_dir, list(tags))
    return SavedModel(session=session, graph=graph, signatures=_signatures(meta_graph))


def list_saved_model_details(export_dir: str | Path) -> tuple[list[list[str]], list[dict[str, Signature]]]:
    """Tags and signatures of every meta graph in export_dir."""
    model = _load_model_json(Path(export_dir))
    tags = [list(m["tags"]) for m in model["meta_graphs"]]
    signatures = [_signatures(m) for m in model["meta_graphs"]]
    return tags, signatures
