"""Tests for the FetchTask executor, using httpx.MockTransport."""

import json

import httpx
import pytest

from core.errors import ErrorCode, TaskExecutionError
from tasks.fetch import FetchExecutor
from tasks.registry import TaskKindRegistry, register_builtin_kinds
from workflows.executor import WorkflowRunner
from workflows.models import Graph, TaskFailure, INPUT_PORT, OUTPUT_PORT, RETURN_PORT
from tests.conftest import edge, fetch, iterate


class Recorder:
    """Mock transport handler that records requests and answers from a table."""

    def __init__(self, routes: dict[str, httpx.Response] | None = None):
        self.routes = routes or {}
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        key = f"{request.method} {request.url.path}"
        if key in self.routes:
            return self.routes[key]
        return httpx.Response(200, json={"path": request.url.path, "query": str(request.url.query, "ascii")})

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)


@pytest.fixture
def server():
    return Recorder()


class TestFetchExecutor:
    """Tests for request building and response handling."""

    @pytest.mark.asyncio
    async def test_get_returns_parsed_json(self, server):
        executor = FetchExecutor("users", {"url": "https://api.test/users"}, transport=server.transport)
        result = await executor([])
        assert result["path"] == "/users"
        assert server.requests[0].method == "GET"

    @pytest.mark.asyncio
    async def test_input_placeholder_and_query_string(self, server):
        executor = FetchExecutor("user", {
            "url": "https://api.test/users/{input}",
            "query_string": "expand=posts&ref={input}",
        }, transport=server.transport)
        result = await executor(42)
        assert result["path"] == "/users/42"
        assert result["query"] == "expand=posts&ref=42"

    @pytest.mark.asyncio
    async def test_post_body_and_headers(self, server):
        executor = FetchExecutor("create", {
            "url": "https://api.test/items",
            "method": "post",
            "body": '{"owner": {input}}',
            "headers": [{"key": "X-Token", "value": "abc"}, {"key": "", "value": "dropped"}],
        }, transport=server.transport)
        await executor({"id": 1})

        request = server.requests[0]
        assert request.method == "POST"
        assert json.loads(request.content) == {"owner": {"id": 1}}
        assert request.headers["x-token"] == "abc"

    @pytest.mark.asyncio
    async def test_body_ignored_for_get(self, server):
        executor = FetchExecutor("get", {"url": "https://api.test/x", "body": "ignored"}, transport=server.transport)
        await executor(None)
        assert server.requests[0].content == b""

    @pytest.mark.asyncio
    async def test_error_status_raises(self):
        server = Recorder({"GET /missing": httpx.Response(404, json={"error": "nope"})})
        executor = FetchExecutor("m", {"url": "https://api.test/missing"}, transport=server.transport)
        with pytest.raises(TaskExecutionError) as exc_info:
            await executor(None)
        assert "HTTP 404" in str(exc_info.value)
        assert exc_info.value.task_id == "m"

    @pytest.mark.asyncio
    async def test_non_json_raises(self):
        server = Recorder({"GET /page": httpx.Response(200, text="<html></html>")})
        executor = FetchExecutor("p", {"url": "https://api.test/page"}, transport=server.transport)
        with pytest.raises(TaskExecutionError, match="not valid JSON"):
            await executor(None)

    @pytest.mark.asyncio
    async def test_upstream_failure_in_template_raises(self, server):
        executor = FetchExecutor("u", {"url": "https://api.test/users/{input}"}, transport=server.transport)
        failure = TaskFailure("users", ErrorCode.EXECUTOR_ERROR, "down")
        with pytest.raises(TaskExecutionError, match="Upstream failed"):
            await executor(failure)
        assert server.requests == []

    @pytest.mark.asyncio
    async def test_missing_url_raises(self, server):
        with pytest.raises(TaskExecutionError, match="No URL"):
            await FetchExecutor("x", {}, transport=server.transport)(None)

    @pytest.mark.asyncio
    async def test_unsupported_method_raises(self, server):
        executor = FetchExecutor("x", {"url": "https://api.test/", "method": "PATCH"}, transport=server.transport)
        with pytest.raises(TaskExecutionError, match="Unsupported method"):
            await executor(None)


class TestFetchGraph:
    """End-to-end runs of fetch graphs through the registry."""

    @pytest.mark.asyncio
    async def test_fetch_per_user_then_report(self):
        server = Recorder({
            "GET /users": httpx.Response(200, json=[{"id": 1}, {"id": 2}]),
            "POST /report": httpx.Response(200, json={"saved": True}),
        })
        registry = TaskKindRegistry(with_builtins=False)
        register_builtin_kinds(registry, transport=server.transport)

        graph = Graph(
            [
                fetch("users", url="https://api.test/users"),
                iterate("each", property="id"),
                fetch("profile", url="https://api.test/profiles/{input}"),
                fetch("report", url="https://api.test/report", method="POST", body="{input}"),
            ],
            [
                edge("users", "each", target_port=INPUT_PORT),
                edge("each", "profile", source_port=OUTPUT_PORT),
                edge("profile", "each", target_port=RETURN_PORT),
                edge("each", "report", source_port=RETURN_PORT),
            ],
        )
        run = await WorkflowRunner(registry=registry).run(graph)

        assert run.status == "completed"
        assert [r.url.path for r in server.requests] == ["/users", "/profiles/1", "/profiles/2", "/report"]
        summary = json.loads(server.requests[-1].content)
        assert summary["count"] == 2
        assert summary["details"][0] == {"element": 1, "result": {"path": "/profiles/1", "query": ""}}
