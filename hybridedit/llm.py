"""
Oracle access over the OpenAI SDK.

OpenRouter is the default endpoint; any OpenAI-compatible base URL works.
Everything downstream talks to the `Oracle` protocol, so a scripted object
with a `complete` method can stand in for the network.
"""

from __future__ import annotations

import logging
from typing import Dict, Protocol

from openai import OpenAI

from .config import LLMConfig

logger = logging.getLogger(__name__)


class Oracle(Protocol):
    def complete(self, system: str, user: str) -> str:
        """Return the raw text of one completion."""
        ...


def attribution_headers(site_url: str, site_name: str) -> Dict[str, str]:
    """OpenRouter ranking headers; empty values are left out."""
    headers: Dict[str, str] = {}
    if site_url:
        headers["HTTP-Referer"] = site_url
    if site_name:
        headers["X-Title"] = site_name
    return headers


class OpenRouterOracle:
    """Single-turn chat completions: one system message, one user message."""

    def __init__(self, cfg: LLMConfig, *, client: OpenAI | None = None):
        self.cfg = cfg
        self.client = client or OpenAI(
            api_key=cfg.resolved_api_key(),
            base_url=cfg.base_url,
            timeout=cfg.timeout_sec,
            max_retries=cfg.max_retries,
        )
        self._headers = attribution_headers(cfg.site_url, cfg.site_name)

    @classmethod
    def from_config(cls, cfg: LLMConfig) -> "OpenRouterOracle":
        return cls(cfg)

    def complete(self, system: str, user: str) -> str:
        cfg = self.cfg
        logger.debug("Oracle request to %s (%d prompt chars)", cfg.model, len(system) + len(user))

        reply = self.client.chat.completions.create(
            model=cfg.model,
            temperature=cfg.temperature,
            max_tokens=cfg.max_tokens,
            extra_headers=self._headers or None,
            messages=[
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
        )
        if not reply.choices:
            return ""
        return reply.choices[0].message.content or ""
