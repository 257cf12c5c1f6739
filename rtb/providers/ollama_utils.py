"""
Shared Ollama helpers: server URL resolution, HTTP calls, model auto-pull.
"""

import json
import logging
import os
import sys
from typing import Optional

import requests

from ..errors import ConfigurationError, ProviderError

logger = logging.getLogger(__name__)

DEFAULT_OLLAMA_URL = "http://localhost:11434"


def ollama_base_url(base_url: Optional[str] = None) -> str:
    """Resolve the server URL: explicit value, then OLLAMA_HOST, then localhost."""
    url = base_url or os.environ.get("OLLAMA_HOST") or DEFAULT_OLLAMA_URL
    if not url.startswith(("http://", "https://")):
        url = f"http://{url}"
    return url.rstrip("/")


def ollama_post(base_url: str, path: str, payload: dict, *, timeout: tuple, what: str) -> dict:
    """
    POST to the Ollama API and decode the JSON reply.

    Raises:
        ProviderError: if the server is unreachable, times out, or answers
            with an error status or a non-JSON body
    """
    try:
        response = requests.post(f"{base_url}{path}", json=payload, timeout=timeout)
    except requests.RequestException as e:
        raise ProviderError(f"Ollama {what} request to {base_url} failed: {e}") from e
    if not response.ok:
        detail = response.text[:200] if response.text else ""
        raise ProviderError(
            f"Ollama {what} failed (model={payload.get('model')}): "
            f"HTTP {response.status_code} from {base_url}. {detail}"
        )
    try:
        return response.json()
    except ValueError as e:
        raise ProviderError(f"Ollama {what} returned invalid JSON: {e}") from e


def ollama_ensure_model(base_url: str, model: str) -> None:
    """Check if an Ollama model is available locally; pull it if not.

    Streams pull progress to stderr so the user sees download status.
    Raises ConfigurationError if Ollama is unreachable or the pull fails.
    """
    # Ollama lists models as "name:tag" and strips :latest
    bare = model.split(":")[0]

    try:
        resp = requests.get(f"{base_url}/api/tags", timeout=5)
        resp.raise_for_status()
    except requests.RequestException as e:
        raise ConfigurationError(
            f"Cannot reach Ollama at {base_url}. "
            "Is Ollama running? Start it with: ollama serve"
        ) from e

    installed = {m["name"] for m in resp.json().get("models", [])}
    if {model, f"{model}:latest", bare, f"{bare}:latest"} & installed:
        return

    logger.info("Pulling Ollama model %s (first use)...", model)
    print(f"Pulling Ollama model '{model}' (first use)...", file=sys.stderr)

    try:
        resp = requests.post(
            f"{base_url}/api/pull",
            json={"name": model, "stream": True},
            stream=True,
            timeout=600,
        )
        resp.raise_for_status()
    except requests.RequestException as e:
        raise ConfigurationError(f"Failed to pull Ollama model '{model}': {e}") from e

    last_status = ""
    for line in resp.iter_lines():
        if not line:
            continue
        try:
            data = json.loads(line)
        except json.JSONDecodeError:
            continue

        if data.get("error"):
            print("", file=sys.stderr)
            raise ConfigurationError(f"Ollama pull failed for '{model}': {data['error']}")

        status = data.get("status", "")
        total = data.get("total", 0)
        completed = data.get("completed", 0)
        if total and completed:
            msg = f"\r  {status}: {int(completed / total * 100)}%"
        elif status != last_status:
            msg = f"\n  {status}"
        else:
            continue
        print(msg, end="", file=sys.stderr, flush=True)
        last_status = status

    print(f"\n  Model '{model}' ready.", file=sys.stderr)
