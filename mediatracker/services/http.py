"""Factory for the outbound httpx clients."""

from __future__ import annotations

from typing import Any, Mapping

import httpx

from ..config import Settings

USER_AGENT = "MediaTracker/1.0 (+https://github.com/mediatracker/mediatracker)"


def build_timeout(settings: Settings) -> httpx.Timeout:
    return httpx.Timeout(settings.request_timeout, connect=min(5.0, settings.request_timeout))


def build_client(
    settings: Settings,
    *,
    base_url: str | None = None,
    headers: Mapping[str, str] | None = None,
    timeout: httpx.Timeout | None = None,
    proxied: bool = True,
) -> httpx.AsyncClient:
    """Return an ``AsyncClient`` honouring the configured proxy settings.

    An explicit ``PROXY_URL`` wins; otherwise environment proxies are used when
    ``USE_SYSTEM_PROXY`` is enabled.
    """

    client_kwargs: dict[str, Any] = {
        "timeout": timeout or build_timeout(settings),
        "headers": {"User-Agent": USER_AGENT, **dict(headers or {})},
        "follow_redirects": True,
    }
    if base_url:
        client_kwargs["base_url"] = base_url
    if proxied and settings.proxy_url:
        client_kwargs["proxy"] = settings.proxy_url
        client_kwargs["trust_env"] = False
    else:
        client_kwargs["trust_env"] = proxied and settings.use_system_proxy
    return httpx.AsyncClient(**client_kwargs)
