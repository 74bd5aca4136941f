"""Tests for graph documents."""

import pytest

from core.errors import GraphDocumentError
from workflows.models import Graph, FETCH_KIND, ITERATE_KIND, INPUT_PORT, OUTPUT_PORT, RETURN_PORT
from workflows.serialization import dumps, from_document, load_graph, loads, save_graph, to_document
from tests.conftest import edge, fetch, iterate


@pytest.fixture
def graph():
    return Graph(
        [
            fetch("users", url="https://api.test/users", headers=[{"key": "A", "value": "1"}]),
            iterate("each", property="id"),
            fetch("profile", url="https://api.test/profiles/{input}"),
            fetch("report", url="https://api.test/report", method="POST"),
        ],
        [
            edge("users", "each", target_port=INPUT_PORT),
            edge("each", "profile", source_port=OUTPUT_PORT),
            edge("profile", "each", target_port=RETURN_PORT),
            edge("each", "report", source_port=RETURN_PORT),
        ],
    )


# The graph editor's export of its starter canvas
EDITOR_DOCUMENT = {
    "nodes": [
        {"id": "a", "type": "ApiFetch", "position": {"x": 0, "y": 300}, "data": {
            "url": "https://jsonplaceholder.typicode.com/users", "method": "GET",
            "queryString": "", "body": "", "headers": [],
        }},
        {"id": "b", "type": "ForEach", "position": {"x": 450, "y": 600}, "data": {"arrayName": "id", "array": []}},
        {"id": "c", "type": "ApiFetch", "data": {"url": "https://api.test/c", "queryString": "q=1"}},
        {"id": "e", "type": "ApiFetch", "data": {"url": "https://api.test/e"}},
    ],
    "edges": [
        {"id": "a->b", "source": "a", "target": "b", "type": "custom"},
        {"id": "b_output->c", "source": "b", "target": "c", "sourceHandle": "output"},
        {"id": "b_return->e", "source": "b", "target": "e", "sourceHandle": "return", "targetHandle": None},
    ],
}


class TestRoundTrip:
    """Tests for lossless save and load."""

    def test_json_round_trip(self, graph):
        assert loads(dumps(graph)) == graph

    def test_yaml_round_trip(self, graph):
        assert loads(dumps(graph, "yaml"), "yaml") == graph

    def test_file_round_trip(self, graph, tmp_path):
        for name in ("graph.json", "graph.yaml", "nested/graph.yml"):
            path = save_graph(graph, tmp_path / name)
            assert load_graph(path) == graph

    def test_unset_ports_are_omitted(self, graph):
        connections = to_document(graph)["connections"]
        assert connections[0] == {"source": "users", "target": "each", "target_port": "input"}


class TestEditorDocument:
    """Tests for loading the editor's export format."""

    def test_node_types_become_kinds(self):
        graph = from_document(EDITOR_DOCUMENT)
        assert graph.get_task("a").kind == FETCH_KIND
        assert graph.get_task("b").kind == ITERATE_KIND

    def test_fields_are_renamed(self):
        graph = from_document(EDITOR_DOCUMENT)
        assert graph.get_task("b").config == {"property": "id", "array": []}
        assert graph.get_task("c").config == {"url": "https://api.test/c", "query_string": "q=1"}

    def test_handles_become_ports(self):
        graph = from_document(EDITOR_DOCUMENT)
        assert set(graph.connections) == {
            edge("a", "b", target_port=INPUT_PORT),
            edge("b", "c", source_port=OUTPUT_PORT),
            edge("b", "e", source_port=RETURN_PORT),
        }


class TestBadDocuments:
    """Tests for refused documents."""

    def test_not_a_mapping(self):
        with pytest.raises(GraphDocumentError):
            from_document(["tasks"])

    def test_task_without_kind(self):
        with pytest.raises(GraphDocumentError, match="Task #0"):
            from_document({"tasks": [{"id": "a"}]})

    def test_connection_without_target(self):
        with pytest.raises(GraphDocumentError, match="Connection #0"):
            from_document({"tasks": [{"id": "a", "kind": FETCH_KIND}], "connections": [{"source": "a"}]})

    def test_unparseable_text(self):
        with pytest.raises(GraphDocumentError):
            loads("{not json")
        with pytest.raises(GraphDocumentError):
            loads("tasks: [unclosed", "yaml")

    def test_missing_file(self, tmp_path):
        with pytest.raises(GraphDocumentError):
            load_graph(tmp_path / "absent.json")
