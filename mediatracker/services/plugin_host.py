"""Subprocess entry point that runs one search plugin in its own process.

The parent writes ``{"script", "query", "name"}`` as JSON to stdin and reads a
single JSON object from stdout: ``{"ok": true, "results": [...]}`` or
``{"ok": false, "error": "..."}``. The script must define ``search(query)``,
plain or ``async``, and is expected to reach the network through ``fetch``.

The reduced builtins and the import allowlist keep well-behaved plugins on
the documented API; they are not a sandbox, since plugin code can still reach
module globals through ``fetch`` and ``log``. Isolation comes from the
process itself: it is killed on timeout and its environment carries no
credentials (see ``plugins.plugin_environment``).
"""

from __future__ import annotations

import asyncio
import builtins
import inspect
import json
import sys
from typing import Any

import httpx

ALLOWED_MODULES = frozenset(
    {"json", "re", "math", "datetime", "html", "urllib", "urllib.parse"}
)

SAFE_BUILTINS = (
    "abs", "all", "any", "bool", "dict", "enumerate", "filter", "float",
    "getattr", "hasattr", "int", "isinstance", "len", "list", "map", "max",
    "min", "print", "range", "reversed", "round", "set", "sorted", "str",
    "sum", "tuple", "zip", "Exception", "ValueError", "KeyError",
    "TypeError", "IndexError", "RuntimeError", "StopIteration", "None",
    "True", "False", "__build_class__", "object", "staticmethod",
    "classmethod", "property", "super",
)


def _restricted_import(
    name: str,
    globals: dict[str, Any] | None = None,
    locals: dict[str, Any] | None = None,
    fromlist: tuple[str, ...] = (),
    level: int = 0,
) -> Any:
    if level != 0 or name not in ALLOWED_MODULES:
        raise ImportError(f"Import of {name!r} is not allowed in plugins")
    return builtins.__import__(name, globals, locals, fromlist, level)


class FetchResponse:
    """Minimal response object handed to plugin code."""

    def __init__(self, response: httpx.Response):
        self.status = response.status_code
        self.ok = response.is_success
        self.url = str(response.url)
        self.headers = dict(response.headers)
        self.text = response.text

    def json(self) -> Any:
        return json.loads(self.text)


def fetch(
    url: str,
    method: str = "GET",
    *,
    headers: dict[str, str] | None = None,
    params: dict[str, Any] | None = None,
    data: Any = None,
    json_body: Any = None,
    timeout: float = 10.0,
) -> FetchResponse:
    with httpx.Client(timeout=timeout, follow_redirects=True) as client:
        response = client.request(
            method.upper(), url, headers=headers, params=params, data=data, json=json_body
        )
    return FetchResponse(response)


def log(*parts: object) -> None:
    print(*parts, file=sys.stderr)


def build_namespace() -> dict[str, Any]:
    safe = {name: getattr(builtins, name) for name in SAFE_BUILTINS if hasattr(builtins, name)}
    safe["__import__"] = _restricted_import
    # stdout carries the JSON response.
    safe["print"] = log
    return {
        "__builtins__": safe,
        "__name__": "plugin",
        "fetch": fetch,
        "log": log,
    }


def run(request: dict[str, Any]) -> dict[str, Any]:
    name = str(request.get("name") or "plugin")
    namespace = build_namespace()
    exec(compile(str(request.get("script") or ""), f"<plugin {name}>", "exec"), namespace)

    search = namespace.get("search")
    if not callable(search):
        return {"ok": False, "error": "Plugin does not define search(query)"}

    results = search(str(request.get("query") or ""))
    if inspect.iscoroutine(results):
        results = asyncio.run(results)
    if not isinstance(results, list):
        return {"ok": False, "error": "search(query) must return a list"}
    return {"ok": True, "results": results}


def main() -> None:
    try:
        request = json.loads(sys.stdin.read() or "{}")
        response = run(request)
    except Exception as exc:
        response = {"ok": False, "error": f"{type(exc).__name__}: {exc}"}
    sys.stdout.write(json.dumps(response, default=str))
    sys.stdout.flush()


if __name__ == "__main__":  # pragma: no cover - executed in a subprocess
    main()
