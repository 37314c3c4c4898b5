"""Runs user supplied search plugins in isolated subprocesses."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import sys
from contextlib import suppress
from pathlib import Path
from typing import Iterable, Mapping

from pydantic import ValidationError

from ..config import Settings
from ..merge import TRUST_HEURISTIC, TRUST_METADATA
from ..models import MediaItem, MediaType, Plugin, PluginResult

logger = logging.getLogger(__name__)

HOST_SCRIPT = Path(__file__).with_name("plugin_host.py")

# Optional "# key: value" header lines describing a plugin file.
_HEADER_RE = re.compile(r"^#\s*(name|version|author|description)\s*:\s*(.+?)\s*$")

# Environment passed to plugin processes; API keys and tokens stay behind.
PLUGIN_ENV_KEYS = (
    "PATH",
    "SYSTEMROOT",
    "LANG",
    "LC_ALL",
    "TMPDIR",
    "TEMP",
    "TMP",
    "SSL_CERT_FILE",
    "SSL_CERT_DIR",
)
PROXY_ENV_KEYS = ("HTTP_PROXY", "HTTPS_PROXY", "ALL_PROXY", "NO_PROXY")


def load_plugins(directory: str | Path | None, disabled: Iterable[str] = ()) -> list[Plugin]:
    """Read ``*.py`` plugin scripts from ``directory`` in name order."""

    if not directory:
        return []
    root = Path(directory)
    if not root.is_dir():
        logger.warning("Plugin directory %s does not exist", root)
        return []

    disabled_names = {name.lower() for name in disabled}
    plugins: list[Plugin] = []
    for path in sorted(root.glob("*.py")):
        try:
            script = path.read_text(encoding="utf-8")
        except OSError as exc:
            logger.warning("Could not read plugin %s: %s", path, exc)
            continue
        metadata: dict[str, str] = {}
        for line in script.splitlines():
            match = _HEADER_RE.match(line.strip())
            if match:
                metadata.setdefault(match.group(1), match.group(2))
            elif line.strip() and not line.startswith("#"):
                break
        plugin = Plugin(
            id=path.stem,
            name=metadata.get("name", path.stem),
            version=metadata.get("version", "0.0.0"),
            author=metadata.get("author", ""),
            description=metadata.get("description", ""),
            script=script,
        )
        plugin.enabled = not (
            plugin.id.lower() in disabled_names or plugin.name.lower() in disabled_names
        )
        plugins.append(plugin)
    return plugins


def plugin_environment(
    settings: Settings, environ: Mapping[str, str] | None = None
) -> dict[str, str]:
    """Return the minimal environment for a plugin process."""

    source = os.environ if environ is None else environ
    env = {key: source[key] for key in PLUGIN_ENV_KEYS if key in source}
    if settings.proxy_url:
        env["HTTP_PROXY"] = env["HTTPS_PROXY"] = settings.proxy_url
    elif settings.use_system_proxy:
        for key in PROXY_ENV_KEYS:
            for name in (key, key.lower()):
                if name in source:
                    env[name] = source[name]
    return env


class PluginRunner:
    """Executes plugins through ``plugin_host.py`` with a hard timeout.

    A plugin that raises, hangs, prints garbage or returns a malformed result
    contributes no results; it never affects other plugins or the caller.
    """

    def __init__(self, settings: Settings, plugins: Iterable[Plugin] | None = None):
        self._settings = settings
        self._plugins = (
            list(plugins)
            if plugins is not None
            else load_plugins(settings.plugin_dir, settings.disabled_plugins)
        )

    @property
    def plugins(self) -> list[Plugin]:
        return list(self._plugins)

    @property
    def enabled_plugins(self) -> list[Plugin]:
        return [plugin for plugin in self._plugins if plugin.enabled]

    async def search(self, query: str) -> list[MediaItem]:
        """Run every enabled plugin concurrently and return their items in plugin order."""

        plugins = self.enabled_plugins
        if not plugins or not query.strip():
            return []
        batches = await asyncio.gather(*(self.run(plugin, query) for plugin in plugins))
        items: list[MediaItem] = []
        for plugin, results in zip(plugins, batches):
            items.extend(self._to_item(plugin, result) for result in results)
        return items

    async def run(self, plugin: Plugin, query: str) -> list[PluginResult]:
        request = json.dumps({"script": plugin.script, "query": query, "name": plugin.name})
        try:
            process = await asyncio.create_subprocess_exec(
                sys.executable,
                "-I",
                str(HOST_SCRIPT),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=plugin_environment(self._settings),
            )
        except OSError as exc:
            logger.warning("Could not start plugin %s: %s", plugin.name, exc)
            return []

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(request.encode("utf-8")),
                timeout=self._settings.plugin_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Plugin %s timed out after %.1fs", plugin.name, self._settings.plugin_timeout
            )
            await self._kill(process)
            return []
        except asyncio.CancelledError:
            await self._kill(process)
            raise

        for line in stderr.decode("utf-8", errors="replace").splitlines():
            logger.debug("[plugin %s] %s", plugin.name, line)

        try:
            response = json.loads(stdout.decode("utf-8", errors="replace") or "{}")
        except ValueError:
            logger.warning("Plugin %s produced invalid output", plugin.name)
            return []
        if not isinstance(response, dict) or not response.get("ok"):
            error = response.get("error") if isinstance(response, dict) else "invalid response"
            logger.warning("Plugin %s failed: %s", plugin.name, error)
            return []

        results: list[PluginResult] = []
        for entry in response.get("results") or []:
            if not isinstance(entry, dict):
                continue
            try:
                results.append(PluginResult.model_validate(entry))
            except ValidationError:
                logger.debug("Plugin %s returned an invalid result: %s", plugin.name, entry)
        return results

    @staticmethod
    async def _kill(process: asyncio.subprocess.Process) -> None:
        with suppress(ProcessLookupError):
            process.kill()
        await process.wait()

    @staticmethod
    def _to_item(plugin: Plugin, result: PluginResult) -> MediaItem:
        item = MediaItem(
            title=result.title,
            type=MediaType.coerce(result.type) if result.type else MediaType.OTHER,
            release_date=result.year or "",
            director_or_author=result.director_or_author or "",
            description=result.description or "",
            cast=result.cast,
            rating=result.rating or "",
            poster_url=result.poster or "",
            link=result.link or "",
            sources=[f"plugin:{plugin.id}"],
        )
        item.mark_trust(TRUST_METADATA)
        if not result.type:
            item.set_trust("type", TRUST_HEURISTIC)
        return item
