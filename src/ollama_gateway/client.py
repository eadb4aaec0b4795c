"""HTTP client for the Ollama inference backend."""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Iterable, Iterator, Mapping, Optional

import httpx

from .errors import BackendStatusError, DecodeError, TransportError
from .prompt import compose_prompt
from .relay import StreamRelay

logger = logging.getLogger(__name__)

UA = "OllamaGateway/0.1"
MAX_ERROR_DETAIL = 300


# -----------------------------
# Helpers
# -----------------------------
def parse_fragment(line: str | bytes) -> Optional[Dict[str, Any]]:
    """Decode one newline-delimited JSON fragment.

    Blank lines, keep-alive noise and anything that is not a JSON object
    return ``None`` so the caller can skip them.
    """
    if isinstance(line, bytes):
        line = line.decode("utf-8", errors="replace")
    line = line.strip()
    if not line:
        return None
    try:
        fragment = json.loads(line)
    except json.JSONDecodeError as e:
        logger.debug("Skipping malformed fragment %r: %s", line[:80], e)
        return None
    if not isinstance(fragment, dict):
        logger.debug("Skipping non-object fragment %r", line[:80])
        return None
    return fragment


def _error_detail(response: httpx.Response) -> str:
    """Best-effort error message from a failed backend response."""
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict) and isinstance(body.get("error"), str):
        return body["error"]
    return (response.text or "").strip()[:MAX_ERROR_DETAIL]


# -----------------------------
# Client
# -----------------------------
class OllamaClient:
    """Thin client for the generate and model-listing endpoints.

    Every call opens its own connection; nothing is pooled across requests.
    ``transport`` lets callers swap the network layer (tests pass an
    :class:`httpx.MockTransport`).
    """

    def __init__(
        self,
        base_url: str = "http://localhost:11434",
        *,
        default_model: str = "llama3.2",
        generate_path: str = "/api/generate",
        models_path: str = "/api/tags",
        default_options: Optional[Mapping[str, Any]] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.default_model = default_model
        self.generate_path = generate_path
        self.models_path = models_path
        self.default_options: Dict[str, Any] = dict(default_options or {})
        self.timeout = timeout
        self._transport = transport

    @classmethod
    def from_config(cls, cfg: Any, transport: Optional[httpx.BaseTransport] = None) -> "OllamaClient":
        """Create a client from a :class:`~ollama_gateway.config.BackendConfig`."""
        return cls(
            cfg.base_url,
            default_model=cfg.default_model,
            generate_path=cfg.generate_path,
            models_path=cfg.models_path,
            default_options=cfg.options,
            timeout=cfg.timeout,
            transport=transport,
        )

    # -------------------------
    # Public API
    # -------------------------
    def send_message(
        self,
        prompt: str,
        model: Optional[str] = None,
        options: Optional[Mapping[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Run a non-streaming generation and return the decoded reply."""
        payload = self.build_payload(prompt, model, options, stream=False)
        logger.info("Generating with model=%s (prompt %d chars)", payload["model"], len(prompt))
        return self._request_json("POST", self.generate_path, json=payload)

    def get_models(self) -> Dict[str, Any]:
        """Return the backend's model listing (``{"models": [...]}``)."""
        return self._request_json("GET", self.models_path)

    def stream_message(
        self,
        prompt: str,
        model: Optional[str] = None,
        options: Optional[Mapping[str, Any]] = None,
        history: Optional[Iterable[Mapping[str, Any]]] = None,
        *,
        exclude_current: bool = False,
        window: Optional[int] = None,
    ) -> StreamRelay:
        """Prepare a relay for a streaming generation.

        When ``history`` is given the prompt is composed from it first. No
        I/O happens until the relay is iterated.
        """
        if history is not None:
            kwargs: Dict[str, Any] = {"exclude_current": exclude_current}
            if window is not None:
                kwargs["window"] = window
            prompt = compose_prompt(history, prompt, **kwargs)
        return StreamRelay(self.stream_fragments(prompt, model, options))

    def stream_fragments(
        self,
        prompt: str,
        model: Optional[str] = None,
        options: Optional[Mapping[str, Any]] = None,
    ) -> Iterator[Dict[str, Any]]:
        """Yield decoded fragments of a streaming generation as they arrive.

        Raises :class:`TransportError` or :class:`BackendStatusError` from the
        first ``next()`` if the request cannot be started, and
        :class:`TransportError` if the connection drops mid-stream.
        """
        payload = self.build_payload(prompt, model, options, stream=True)
        logger.info("Streaming with model=%s (prompt %d chars)", payload["model"], len(prompt))
        try:
            with self._client() as client:
                with client.stream("POST", self.generate_path, json=payload) as response:
                    if not response.is_success:
                        response.read()
                        raise BackendStatusError(response.status_code, _error_detail(response))
                    for line in response.iter_lines():
                        fragment = parse_fragment(line)
                        if fragment is not None:
                            yield fragment
        except httpx.HTTPError as e:
            raise TransportError(f"Backend connection failed: {e}") from e

    def build_payload(
        self,
        prompt: str,
        model: Optional[str],
        options: Optional[Mapping[str, Any]],
        *,
        stream: bool,
    ) -> Dict[str, Any]:
        """Request body; configured defaults, then caller options, win over the base keys."""
        payload: Dict[str, Any] = {
            "model": model or self.default_model,
            "prompt": prompt,
            "stream": stream,
        }
        payload.update(self.default_options)
        payload.update(options or {})
        return payload

    # -------------------------
    # Internals
    # -------------------------
    def _client(self) -> httpx.Client:
        return httpx.Client(
            base_url=self.base_url,
            timeout=self.timeout,
            headers={"User-Agent": UA, "Accept": "application/json"},
            transport=self._transport,
        )

    def _request_json(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        try:
            with self._client() as client:
                response = client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            logger.error("%s %s%s failed: %s", method, self.base_url, path, e)
            raise TransportError(f"Backend connection failed: {e}") from e

        if not response.is_success:
            logger.error("%s %s%s returned HTTP %d", method, self.base_url, path, response.status_code)
            raise BackendStatusError(response.status_code, _error_detail(response))

        try:
            body = response.json()
        except ValueError as e:
            raise DecodeError(f"Invalid JSON from backend: {e}") from e
        if not isinstance(body, dict):
            raise DecodeError(f"Expected a JSON object from backend, got {type(body).__name__}")
        return body
