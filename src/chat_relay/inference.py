"""Client for the hosted chat-completion endpoint."""

from __future__ import annotations

import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Sequence

import httpx

from .errors import UpstreamInferenceError
from .models import ChatMessage

logger = logging.getLogger(__name__)


# -----------------------------
# Types & defaults
# -----------------------------

@dataclass
class InferenceConfig:
    base_url: str = "https://api.cloudflare.com/client/v4"
    account_id: str = ""
    api_token: str = ""
    model: str = "@cf/meta/llama-3.3-70b-instruct-fp8-fast"
    max_tokens: int = 1024
    timeout: float = 60.0


class InferenceClient(ABC):
    """Given role-tagged messages, return one reply string.

    Implementations raise :class:`UpstreamInferenceError` when the call fails
    or the reply is empty.
    """

    @abstractmethod
    async def complete(self, messages: Sequence[ChatMessage], max_tokens: int) -> str: ...

    async def close(self) -> None:
        return None


def extract_reply(payload: Any) -> str:
    """Pull the reply text out of a Workers AI style response body.

    Accepts ``{"result": {"response": ...}}``, ``{"response": ...}`` and
    ``{"result": "..."}``.
    """
    if not isinstance(payload, dict):
        return ""
    result = payload.get("result")
    if isinstance(result, dict) and isinstance(result.get("response"), str):
        return result["response"]
    if isinstance(payload.get("response"), str):
        return payload["response"]
    if isinstance(result, str):
        return result
    return ""


# -----------------------------
# Workers AI over HTTP
# -----------------------------

class WorkersAIClient(InferenceClient):
    """POSTs ``{messages, max_tokens}`` to ``/accounts/<id>/ai/run/<model>``."""

    def __init__(self, config: InferenceConfig, client: Optional[httpx.AsyncClient] = None) -> None:
        self.config = config
        headers = {"Content-Type": "application/json"}
        if config.api_token:
            headers["Authorization"] = f"Bearer {config.api_token}"
        self._client = client or httpx.AsyncClient(
            base_url=config.base_url.rstrip("/"),
            headers=headers,
            timeout=httpx.Timeout(config.timeout, connect=5.0),
        )
        self._owns_client = client is None

    @property
    def run_path(self) -> str:
        return f"/accounts/{self.config.account_id}/ai/run/{self.config.model}"

    async def complete(self, messages: Sequence[ChatMessage], max_tokens: int) -> str:
        body: Dict[str, Any] = {
            "messages": [m.model_dump() for m in messages],
            "max_tokens": max_tokens,
        }
        try:
            r = await self._client.post(self.run_path, json=body)
            r.raise_for_status()
            payload = r.json()
        except httpx.HTTPStatusError as e:
            raise UpstreamInferenceError(f"Inference returned HTTP {e.response.status_code}") from e
        except httpx.HTTPError as e:
            raise UpstreamInferenceError(f"Inference request failed: {e}") from e
        except ValueError as e:
            raise UpstreamInferenceError(f"Inference returned invalid JSON: {e}") from e

        reply = extract_reply(payload)
        if not reply.strip():
            raise UpstreamInferenceError("Inference returned an empty reply")
        return reply

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()


# -----------------------------
# Convenience factory
# -----------------------------

def create_inference_client(cfg: Mapping[str, Any]) -> WorkersAIClient:
    """Create a WorkersAIClient from a config dict (e.g., loaded YAML)."""
    inf_cfg = cfg.get("inference", {}) if isinstance(cfg, Mapping) else {}
    defaults = InferenceConfig()
    config = InferenceConfig(
        base_url=str(inf_cfg.get("base_url") or defaults.base_url),
        account_id=str(inf_cfg.get("account_id") or os.environ.get("CHAT_RELAY_ACCOUNT_ID", "")),
        api_token=str(inf_cfg.get("api_token") or os.environ.get("CHAT_RELAY_API_TOKEN", "")),
        model=str(inf_cfg.get("model") or defaults.model),
        max_tokens=int(inf_cfg.get("max_tokens", defaults.max_tokens)),
        timeout=float(inf_cfg.get("timeout", defaults.timeout)),
    )
    if not config.account_id or not config.api_token:
        logger.warning("Inference account id or API token not configured; requests will fail.")
    return WorkersAIClient(config)
