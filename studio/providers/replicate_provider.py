"""
Inference client for hosted generative models (Replicate HTTP API).

Env:
- REPLICATE_API_TOKEN: API token (required unless INFERENCE_MOCK=1)
- REPLICATE_BASE_URL: API base (default: https://api.replicate.com/v1)
- REPLICATE_TIMEOUT_SECONDS: per-request HTTP timeout (default: 30, range: 1-300)
- REPLICATE_POLL_SECONDS: delay between prediction status polls (default: 1.0)
- REPLICATE_MAX_WAIT_SECONDS: give up polling after this long (default: 600)
- INFERENCE_MOCK=1: return deterministic placeholder URLs (no external calls)
"""

from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional, Protocol
from urllib.parse import quote

import requests

logger = logging.getLogger(__name__)

_TERMINAL_STATUSES = ("succeeded", "failed", "canceled")


class InferenceError(RuntimeError):
    """The inference service did not produce an output."""


class InferenceClient(Protocol):
    def run(self, model: str, input: Mapping[str, Any]) -> Any:
        """
        Run a model to completion and return its raw output.

        Args:
            model: Model reference in "owner/name:version" format
            input: Model input parameters

        Raises:
            InferenceError, requests.RequestException
        """
        ...


def _env_bool(name: str, default: bool = False) -> bool:
    raw = (os.getenv(name) or "").strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "y", "on")


def _env_float(name: str, default: float, lo: float, hi: float) -> float:
    raw = (os.getenv(name) or "").strip()
    try:
        value = float(raw) if raw else default
    except ValueError:
        value = default
    return max(lo, min(hi, value))


@dataclass(frozen=True)
class ReplicateConfig:
    api_token: Optional[str]
    base_url: str
    timeout: float
    poll_interval: float
    max_wait: float
    mock: bool


def load_replicate_config() -> ReplicateConfig:
    return ReplicateConfig(
        api_token=(os.getenv("REPLICATE_API_TOKEN") or "").strip() or None,
        base_url=((os.getenv("REPLICATE_BASE_URL") or "").strip() or "https://api.replicate.com/v1").rstrip("/"),
        timeout=_env_float("REPLICATE_TIMEOUT_SECONDS", 30.0, 1.0, 300.0),
        poll_interval=_env_float("REPLICATE_POLL_SECONDS", 1.0, 0.0, 30.0),
        max_wait=_env_float("REPLICATE_MAX_WAIT_SECONDS", 600.0, 1.0, 3600.0),
        mock=_env_bool("INFERENCE_MOCK", False),
    )


def split_model_ref(model: str) -> tuple[str, Optional[str]]:
    """Split "owner/name:version" into ("owner/name", "version")."""
    name, sep, version = (model or "").partition(":")
    return name, (version if sep and version else None)


class ReplicateClient:
    """Blocking client: create a prediction, then poll until it reaches a terminal status."""

    def __init__(
        self,
        api_token: str,
        *,
        base_url: str = "https://api.replicate.com/v1",
        timeout: float = 30.0,
        poll_interval: float = 1.0,
        max_wait: float = 600.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._poll_interval = poll_interval
        self._max_wait = max_wait
        self._sleep = sleep
        self._headers = {
            "Authorization": f"Bearer {api_token}",
            "Content-Type": "application/json",
        }

    def run(self, model: str, input: Mapping[str, Any]) -> Any:
        name, version = split_model_ref(model)
        if version:
            url = f"{self._base_url}/predictions"
            body: Dict[str, Any] = {"version": version, "input": dict(input)}
        else:
            # Official models are addressed by name and always run their latest version.
            url = f"{self._base_url}/models/{quote(name, safe='/')}/predictions"
            body = {"input": dict(input)}

        r = requests.post(
            url,
            json=body,
            # Ask the API to hold the response until the prediction finishes (bounded server-side).
            headers={**self._headers, "Prefer": "wait"},
            timeout=self._timeout,
        )
        r.raise_for_status()
        prediction = self._wait(r.json())

        status = prediction.get("status")
        if status != "succeeded":
            raise InferenceError(f"Prediction {prediction.get('id')} {status}: {prediction.get('error')}")
        return prediction.get("output")

    def _wait(self, prediction: Dict[str, Any]) -> Dict[str, Any]:
        deadline = time.monotonic() + self._max_wait
        while prediction.get("status") not in _TERMINAL_STATUSES:
            if time.monotonic() >= deadline:
                raise InferenceError(f"Prediction {prediction.get('id')} did not finish within {self._max_wait:.0f}s")
            poll_url = str((prediction.get("urls") or {}).get("get") or "")
            if not poll_url:
                raise InferenceError("Prediction response missing urls.get")
            self._sleep(self._poll_interval)
            r = requests.get(poll_url, headers=self._headers, timeout=self._timeout)
            r.raise_for_status()
            prediction = r.json()
            logger.debug("Prediction %s status=%s", prediction.get("id"), prediction.get("status"))
        return prediction


class MockInferenceClient:
    """Stable stub used when INFERENCE_MOCK=1."""

    def run(self, model: str, input: Mapping[str, Any]) -> Any:
        name, _ = split_model_ref(model)
        prompt = str(input.get("prompt") or input.get("text") or "")
        return f"https://example.invalid/mock/{quote(name, safe='/')}?prompt={quote(prompt)}"


def get_inference_client(cfg: Optional[ReplicateConfig] = None) -> InferenceClient:
    cfg = cfg or load_replicate_config()
    if cfg.mock:
        return MockInferenceClient()
    if not cfg.api_token:
        logger.warning("REPLICATE_API_TOKEN is not set; generation requests will fail")
    return ReplicateClient(
        cfg.api_token or "",
        base_url=cfg.base_url,
        timeout=cfg.timeout,
        poll_interval=cfg.poll_interval,
        max_wait=cfg.max_wait,
    )
