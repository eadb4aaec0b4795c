from __future__ import annotations

import httpx
import pytest

from ollama_gateway.client import OllamaClient, parse_fragment
from ollama_gateway.errors import BackendStatusError, DecodeError, TransportError
from ollama_gateway.relay import RelayEvent, RelayState


def test_send_message_posts_non_streaming_body(backend):
    client = backend.client()
    reply = client.send_message("Hello", "mistral", {"temperature": 0.2})

    assert reply["response"] == "ok"
    method, path, body = backend.requests[-1]
    assert (method, path) == ("POST", "/api/generate")
    assert body == {"model": "mistral", "prompt": "Hello", "stream": False, "temperature": 0.2}


def test_caller_options_win_over_configured_defaults(backend):
    client = backend.client(default_options={"temperature": 0.7, "num_ctx": 4096})
    client.send_message("Hi", options={"temperature": 0.1})

    assert backend.last_body["temperature"] == 0.1
    assert backend.last_body["num_ctx"] == 4096
    assert backend.last_body["model"] == "llama3.2"


def test_send_message_backend_500_raises_status_error(backend):
    backend.status = 500
    client = backend.client()

    with pytest.raises(BackendStatusError) as info:
        client.send_message("Hello")
    assert info.value.backend_status == 500
    assert "model runner crashed" in info.value.message


def test_send_message_transport_error(backend):
    backend.connect_error = httpx.ConnectError("connection refused")
    with pytest.raises(TransportError):
        backend.client().send_message("Hello")


def test_send_message_malformed_json_raises_decode_error():
    transport = httpx.MockTransport(lambda request: httpx.Response(200, text="not json{"))
    client = OllamaClient(transport=transport)
    with pytest.raises(DecodeError):
        client.send_message("Hello")


def test_send_message_non_object_json_raises_decode_error():
    transport = httpx.MockTransport(lambda request: httpx.Response(200, json=["not", "an", "object"]))
    client = OllamaClient(transport=transport)
    with pytest.raises(DecodeError):
        client.send_message("Hello")


def test_get_models(backend):
    models = backend.client().get_models()
    assert [m["name"] for m in models["models"]] == ["llama3.2", "mistral"]
    assert backend.requests[-1][:2] == ("GET", "/api/tags")


def test_get_models_status_error(backend):
    backend.status = 404
    with pytest.raises(BackendStatusError):
        backend.client().get_models()


def test_parse_fragment_skips_noise():
    assert parse_fragment("") is None
    assert parse_fragment("   ") is None
    assert parse_fragment("{not json") is None
    assert parse_fragment("[1, 2]") is None
    assert parse_fragment(b'{"response": "x"}') == {"response": "x"}


def test_stream_message_relays_fragments(backend):
    relay = backend.client().stream_message("Hi")
    events = list(relay.events())

    assert events == [RelayEvent.message("Hel"), RelayEvent.message("lo"), RelayEvent.done()]
    assert backend.last_body["stream"] is True
    assert backend.last_stream.closed


def test_stream_message_skips_malformed_line(backend):
    backend.lines = ["garbage{{", '{"response":"ok"}', '{"done":true}']
    events = list(backend.client().stream_message("Hi").events())
    assert events == [RelayEvent.message("ok"), RelayEvent.done()]


def test_stream_message_composes_history(backend):
    history = [
        {"role": "user", "content": "Hi"},
        {"role": "assistant", "content": "Hello"},
        {"role": "user", "content": "How are you?"},
    ]
    relay = backend.client().stream_message("How are you?", history=history, exclude_current=True)
    list(relay.events())
    assert backend.last_body["prompt"] == (
        "User: Hi\n\nAssistant: Hello\n\nUser: How are you?\n\nAssistant:"
    )


def test_stream_message_is_lazy(backend):
    backend.client().stream_message("Hi")
    assert backend.requests == []


def test_stream_connect_error_becomes_error_event(backend):
    backend.connect_error = httpx.ConnectError("connection refused")
    relay = backend.client().stream_message("Hi")
    events = list(relay.events())

    assert len(events) == 1 and events[0].kind == "error"
    assert "connection refused" in events[0].data["error"]
    assert relay.state is RelayState.FAILED


def test_stream_status_error_becomes_error_event(backend):
    backend.status = 500
    events = list(backend.client().stream_message("Hi").events())
    assert [e.kind for e in events] == ["error"]
    assert "500" in events[0].data["error"]


def test_stream_read_error_after_fragments(backend):
    backend.lines = ['{"response":"par"}']
    backend.stream_error = httpx.ReadError("connection reset")
    events = list(backend.client().stream_message("Hi").events())

    assert [e.kind for e in events] == ["message", "error"]
    assert "connection reset" in events[-1].data["error"]


def test_stream_error_fragment_becomes_error_event(backend):
    backend.lines = ['{"response":"a"}', '{"error":"out of memory"}']
    relay = backend.client().stream_message("Hi")
    events = list(relay.events())

    assert [e.kind for e in events] == ["message", "error"]
    assert events[-1].data == {"error": "out of memory"}
    assert relay.state is RelayState.FAILED


def test_abandoned_stream_releases_connection(backend):
    relay = backend.client().stream_message("Hi")
    frames = relay.sse()
    next(frames)
    frames.close()

    assert backend.last_stream.closed
    assert backend.last_stream.served < len(backend.lines)
