"""Streaming relay: backend fragments in, server-sent events out."""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, Iterator, Optional

from .errors import GatewayError

logger = logging.getLogger(__name__)

SSE_HEADERS: Dict[str, str] = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


class RelayState(str, Enum):
    IDLE = "idle"
    STREAMING = "streaming"
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=True)
class RelayEvent:
    """One client-facing event. ``kind`` is ``message``, ``done`` or ``error``."""

    kind: str
    data: Optional[Dict[str, Any]] = None

    @classmethod
    def message(cls, content: Any) -> "RelayEvent":
        return cls("message", {"content": content})

    @classmethod
    def done(cls) -> "RelayEvent":
        return cls("done", None)

    @classmethod
    def error(cls, description: str) -> "RelayEvent":
        return cls("error", {"error": description})

    def encode(self) -> str:
        """Serialize as a server-sent-event frame (blank-line terminated)."""
        lines = []
        if self.kind != "message":
            lines.append(f"event: {self.kind}")
        lines.append("data: " + json.dumps(self.data, ensure_ascii=False))
        return "\n".join(lines) + "\n\n"


class StreamRelay:
    """Drive one upstream generation and translate it into client events.

    ``fragments`` is a lazy iterable of decoded JSON objects; the upstream
    request is expected to start on the first pull, so connection failures
    surface inside :meth:`events` and become an ``error`` event.

    A relay runs once. Closing the generator returned by :meth:`events` or
    :meth:`sse` (e.g. when the client goes away) closes the upstream
    iterator, which releases the backend connection.
    """

    def __init__(self, fragments: Iterable[Dict[str, Any]]) -> None:
        self._fragments = fragments
        self.state = RelayState.IDLE
        self.emitted = 0

    @property
    def finished(self) -> bool:
        return self.state in (RelayState.DONE, RelayState.FAILED)

    def events(self) -> Iterator[RelayEvent]:
        if self.state is not RelayState.IDLE:
            raise RuntimeError(f"relay already {self.state.value}")
        self.state = RelayState.STREAMING
        upstream = iter(self._fragments)
        try:
            for fragment in upstream:
                if isinstance(fragment.get("error"), str):
                    logger.warning("Backend reported an error after %d message events: %s",
                                   self.emitted, fragment["error"])
                    self.state = RelayState.FAILED
                    yield RelayEvent.error(fragment["error"])
                    return
                if "response" in fragment:
                    self.emitted += 1
                    yield RelayEvent.message(fragment["response"])
                if fragment.get("done") is True:
                    self.state = RelayState.DONE
                    logger.info("Relay done after %d message events", self.emitted)
                    yield RelayEvent.done()
                    return
        except GatewayError as exc:
            logger.warning("Relay failed after %d message events: %s", self.emitted, exc)
            self.state = RelayState.FAILED
            yield RelayEvent.error(exc.message)
            return
        except Exception as exc:
            logger.exception("Unexpected relay failure: %s", exc)
            self.state = RelayState.FAILED
            yield RelayEvent.error(str(exc) or exc.__class__.__name__)
            return
        finally:
            close = getattr(upstream, "close", None)
            if close is not None:
                close()

        # Upstream hung up without a completion marker.
        logger.warning("Upstream closed before completion after %d message events", self.emitted)
        self.state = RelayState.FAILED
        yield RelayEvent.error("Backend stream ended before completion")

    def sse(self) -> Iterator[str]:
        """Yield each event as an encoded SSE frame, one frame per item."""
        events = self.events()
        try:
            for event in events:
                yield event.encode()
        finally:
            events.close()
