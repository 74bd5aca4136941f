"""
Graph documents: load and save graphs as JSON or YAML.

Native form:

    tasks:
      - id: users
        kind: FetchTask
        config: {url: "https://api.example.com/users"}
      - id: each-user
        kind: IterateTask
        config: {property: id}
    connections:
      - {source: users, target: each-user, target_port: input}

Documents exported by the graph editor (`nodes`/`edges`, with `ApiFetch` and
`ForEach` node types) are accepted on load and converted to the native form.
"""
import json
import logging
from pathlib import Path
from typing import Any

import yaml

from core.errors import GraphDocumentError
from workflows.models import (
    Connection, Graph, Task,
    FETCH_KIND, ITERATE_KIND, INPUT_PORT, OUTPUT_PORT,
)

logger = logging.getLogger(__name__)

YAML_SUFFIXES = (".yaml", ".yml")

# Editor node type -> task kind
_EDITOR_KINDS = {
    "ApiFetch": FETCH_KIND,
    "ForEach": ITERATE_KIND,
}

# Editor data field -> config key
_EDITOR_FIELDS = {
    FETCH_KIND: {
        "url": "url",
        "method": "method",
        "queryString": "query_string",
        "body": "body",
        "headers": "headers",
    },
    ITERATE_KIND: {
        "arrayName": "property",
        "array": "array",
    },
}


def to_document(graph: Graph) -> dict[str, Any]:
    """Native document for a graph. Unset ports are omitted."""
    tasks = []
    for task in graph.tasks:
        entry: dict[str, Any] = {"id": task.id, "kind": task.kind}
        if task.config:
            entry["config"] = dict(task.config)
        tasks.append(entry)

    connections = []
    for conn in graph.connections:
        entry = {"source": conn.source, "target": conn.target}
        if conn.source_port is not None:
            entry["source_port"] = conn.source_port
        if conn.target_port is not None:
            entry["target_port"] = conn.target_port
        connections.append(entry)

    return {"tasks": tasks, "connections": connections}


def from_document(document: Any) -> Graph:
    """Build a graph from a native or editor-exported document."""
    if not isinstance(document, dict):
        raise GraphDocumentError("Graph document must be a mapping")

    if "nodes" in document and "tasks" not in document:
        logger.debug("Converting editor document")
        document = _from_editor(document)

    tasks = []
    for i, raw in enumerate(document.get("tasks") or []):
        if not isinstance(raw, dict) or not raw.get("id") or not raw.get("kind"):
            raise GraphDocumentError(f"Task #{i} needs an 'id' and a 'kind'")
        config = raw.get("config") or {}
        if not isinstance(config, dict):
            raise GraphDocumentError(f"Task '{raw['id']}' config must be a mapping")
        tasks.append(Task(id=str(raw["id"]), kind=str(raw["kind"]), config=config))

    connections = []
    for i, raw in enumerate(document.get("connections") or []):
        if not isinstance(raw, dict) or not raw.get("source") or not raw.get("target"):
            raise GraphDocumentError(f"Connection #{i} needs a 'source' and a 'target'")
        connections.append(Connection(
            source=str(raw["source"]),
            target=str(raw["target"]),
            source_port=raw.get("source_port") or None,
            target_port=raw.get("target_port") or None,
        ))

    return Graph(tasks, connections)


def _from_editor(document: dict[str, Any]) -> dict[str, Any]:
    kinds: dict[str, str] = {}
    tasks = []
    for i, node in enumerate(document.get("nodes") or []):
        if not isinstance(node, dict) or not node.get("id") or not node.get("type"):
            raise GraphDocumentError(f"Node #{i} needs an 'id' and a 'type'")
        kind = _EDITOR_KINDS.get(node["type"], node["type"])
        data = node.get("data") or {}
        fields = _EDITOR_FIELDS.get(kind)
        if fields is None:
            config = {k: v for k, v in data.items() if not callable(v)}
        else:
            config = {fields[k]: v for k, v in data.items() if k in fields}
        kinds[node["id"]] = kind
        tasks.append({"id": node["id"], "kind": kind, "config": config})

    connections = []
    for edge in document.get("edges") or []:
        if not isinstance(edge, dict):
            raise GraphDocumentError("Edge entries must be mappings")
        source_port = edge.get("sourceHandle") or None
        target_port = edge.get("targetHandle") or None
        # A handle-less edge attaches to the iterate task's first handle
        if source_port is None and kinds.get(edge.get("source")) == ITERATE_KIND:
            source_port = OUTPUT_PORT
        if target_port is None and kinds.get(edge.get("target")) == ITERATE_KIND:
            target_port = INPUT_PORT
        connections.append({
            "source": edge.get("source"),
            "target": edge.get("target"),
            "source_port": source_port,
            "target_port": target_port,
        })

    return {"tasks": tasks, "connections": connections}


# ── text and files ─────────────────────────────────────────────────
def dumps(graph: Graph, fmt: str = "json") -> str:
    document = to_document(graph)
    if fmt == "yaml":
        return yaml.safe_dump(document, sort_keys=False)
    return json.dumps(document, indent=2)


def loads(text: str, fmt: str = "json") -> Graph:
    try:
        document = yaml.safe_load(text) if fmt == "yaml" else json.loads(text)
    except (yaml.YAMLError, json.JSONDecodeError) as e:
        raise GraphDocumentError(f"Could not parse {fmt} graph document: {e}") from e
    return from_document(document)


def _format_for(path: Path) -> str:
    return "yaml" if path.suffix.lower() in YAML_SUFFIXES else "json"


def load_graph(path: str | Path) -> Graph:
    """Load a graph from a .json, .yaml or .yml file."""
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise GraphDocumentError(f"Could not read {path}: {e}") from e
    graph = loads(text, _format_for(path))
    logger.info(f"Loaded graph from {path}: {len(graph)} tasks, {len(graph.connections)} connections")
    return graph


def save_graph(graph: Graph, path: str | Path) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(dumps(graph, _format_for(path)), encoding="utf-8")
    return path
