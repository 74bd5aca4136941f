"""HTTP fetch task kind."""

import json
import logging
import os
import re
from typing import Any

import httpx

from core.errors import TaskExecutionError
from workflows.models import Task, TaskFailure

logger = logging.getLogger(__name__)

FETCH_TIMEOUT = float(os.environ.get("FLOWGRAPH_FETCH_TIMEOUT", "30"))

METHODS = ("GET", "POST", "PUT", "DELETE")
BODY_METHODS = ("POST", "PUT")

_INPUT_PLACEHOLDER = re.compile(r"\{input\}")


class FetchExecutor:
    """
    Executes one FetchTask.

    Config keys: url, method, query_string, body, headers. Headers are either
    a mapping or a list of {key, value} pairs; pairs with an empty key are
    dropped. `{input}` in url, query_string or body is replaced with the
    task's input value.
    """

    def __init__(
        self,
        task_id: str,
        config: dict[str, Any],
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = FETCH_TIMEOUT,
    ):
        self.task_id = task_id
        self.config = dict(config)
        self.transport = transport
        self.timeout = timeout

    async def __call__(self, input_value: Any) -> Any:
        url = self.config.get("url") or ""
        if not url:
            raise TaskExecutionError(self.task_id, "No URL configured")

        method = str(self.config.get("method") or "GET").upper()
        if method not in METHODS:
            raise TaskExecutionError(self.task_id, f"Unsupported method: {method}")

        query_string = self._fill(self.config.get("query_string") or "", input_value)
        full_url = self._fill(url, input_value)
        if query_string:
            full_url = f"{full_url}?{query_string}"

        body = self.config.get("body")
        content = None
        if method in BODY_METHODS and body:
            content = self._fill(body, input_value)

        headers = self._headers()
        logger.debug(f"FetchTask {self.task_id}: {method} {full_url}")

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.request(method, full_url, headers=headers, content=content)
                response.raise_for_status()
                return response.json()
        except httpx.HTTPStatusError as e:
            raise TaskExecutionError(
                self.task_id, f"HTTP {e.response.status_code} from {full_url}", e
            ) from e
        except httpx.HTTPError as e:
            raise TaskExecutionError(self.task_id, f"Request failed: {e}", e) from e
        except ValueError as e:
            raise TaskExecutionError(self.task_id, "Response is not valid JSON", e) from e

    def _headers(self) -> dict[str, str]:
        raw = self.config.get("headers") or []
        if isinstance(raw, dict):
            return {str(k): str(v) for k, v in raw.items() if k}
        return {
            str(h.get("key")): str(h.get("value", ""))
            for h in raw
            if isinstance(h, dict) and h.get("key")
        }

    def _fill(self, template: str, input_value: Any) -> str:
        if not _INPUT_PLACEHOLDER.search(template):
            return template
        if isinstance(input_value, TaskFailure):
            raise TaskExecutionError(self.task_id, f"Upstream failed: {input_value}")
        if isinstance(input_value, (dict, list)):
            text = json.dumps(input_value)
        else:
            text = "" if input_value is None else str(input_value)
        return _INPUT_PLACEHOLDER.sub(lambda _: text, template)


def make_fetch_executor(task: Task, transport: httpx.AsyncBaseTransport | None = None) -> FetchExecutor:
    return FetchExecutor(task.id, task.config, transport=transport)
