import json

import pytest

from chat_gateway.backends import BackendRegistry
from chat_gateway.endpoints import BACKEND_LMI
from chat_gateway.errors import BackendInvocationError
from chat_gateway.main import chat_completions
from shared.schemas import ChatCompletionRequest
from utils import parse_sse

PIRATE_REQUEST = {
    "model": "Llama-3-70B-Instruct",
    "messages": [
        {"role": "system", "content": "You are a pirate chatbot who always responds in pirate speak!"},
        {"role": "user", "content": "Who are you?"},
    ],
}


def _chat_body(**overrides):
    return {**PIRATE_REQUEST, **overrides}


def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


def test_request_id_echoed(client):
    resp = client.get("/health", headers={"X-Request-ID": "req-123"})
    assert resp.headers["X-Request-ID"] == "req-123"


def test_list_models(client):
    resp = client.get("/v1/models")
    assert resp.status_code == 200
    cards = resp.json()["data"]
    assert [card["id"] for card in cards] == [
        "Llama-3-70B-Instruct",
        "Phi-3-mini-4k-instruct",
        "Llama3-ChatQA-1.5-8B",
        "Llama-3-8B",
        "Mistral-7B-Instruct-v0.3",
        "Llama-3-8B-Instruct-Bedrock",
    ]
    assert cards[0]["owned_by"] == "lmi"
    assert cards[-1]["owned_by"] == "bedrock"
    assert resp.json()["object"] == "list"


def test_contract_non_stream(client, fake_backend):
    fake_backend.reply = b'{"generated_text": "Ahoy!<|eot_id|>"}'

    resp = client.post("/v1/chat/completions", json=_chat_body(stream=False))
    assert resp.status_code == 200
    payload = resp.json()
    assert payload["object"] == "chat.completion"
    assert payload["model"] == "Llama-3-70B-Instruct"
    assert payload["choices"][0]["message"] == {"role": "assistant", "content": "Ahoy!"}
    assert payload["choices"][0]["finish_reason"] == "stop"
    assert payload["usage"] == {"prompt_tokens": 0, "completion_tokens": 0, "total_tokens": 0}

    kind, route, envelope, inference_id = fake_backend.calls[0]
    assert kind == "invoke"
    assert route.endpoint_name == "lmi-llama-3-70B-Instruct"
    assert payload["id"] == inference_id
    assert json.loads(envelope.body)["inputs"].endswith("<|start_header_id|>assistant<|end_header_id|>\n\n")


def test_contract_stream(client, fake_backend):
    fake_backend.fragments = [b'{"generated_text": "', b"Ahoy", b"! <|eot", b"_id|>", b'"}']

    resp = client.post("/v1/chat/completions", json=_chat_body(stream=True))
    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/event-stream")

    events = parse_sse(resp.text)
    assert events[-1] == "[DONE]"
    chunks = events[:-1]
    assert len(chunks) == 3
    assert [chunk["object"] for chunk in chunks] == ["chat.completion.chunk"] * 3
    assert chunks[0]["choices"][0]["delta"] == {"role": "assistant", "content": "Ahoy"}
    assert chunks[1]["choices"][0]["delta"] == {"content": "! "}
    assert chunks[2]["choices"][0]["delta"] == {}
    assert [chunk["choices"][0]["finish_reason"] for chunk in chunks] == [None, None, "stop"]
    assert len({chunk["id"] for chunk in chunks}) == 1
    assert fake_backend.closed
    assert fake_backend.pulled == 4


def test_contract_stream_length(client, fake_backend):
    fake_backend.fragments = [b'{"generated_text": "Ahoy', b'!"}']

    resp = client.post("/v1/chat/completions", json=_chat_body(stream=True))
    chunks = parse_sse(resp.text)[:-1]
    assert [chunk["choices"][0]["delta"].get("content") for chunk in chunks] == ["Ahoy", "!", None]
    assert chunks[-1]["choices"][0]["finish_reason"] == "length"


def test_contract_unknown_model(client, fake_backend):
    resp = client.post("/v1/chat/completions", json=_chat_body(model="gpt-4o"))
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "model_not_found"
    assert fake_backend.calls == []


def test_contract_unsupported_family(client, fake_backend):
    resp = client.post("/v1/chat/completions", json=_chat_body(model="Mistral-7B-Instruct-v0.3"))
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "unsupported_model"
    assert fake_backend.calls == []


def test_contract_unknown_role(client):
    body = {
        "model": "Llama3-ChatQA-1.5-8B",
        "messages": [{"role": "tool", "content": "{}"}],
    }
    resp = client.post("/v1/chat/completions", json=body)
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "unknown_role"


def test_contract_backend_error(client, fake_backend):
    fake_backend.error = BackendInvocationError("Endpoint not found", code="ValidationError")

    resp = client.post("/v1/chat/completions", json=_chat_body())
    assert resp.status_code == 502
    assert resp.json()["error"] == {
        "message": "Endpoint not found",
        "type": "upstream_error",
        "code": "ValidationError",
    }


def test_contract_stream_open_error(client, fake_backend):
    fake_backend.error = BackendInvocationError("throttled", code="ThrottlingException")

    resp = client.post("/v1/chat/completions", json=_chat_body(stream=True))
    assert resp.status_code == 502
    assert resp.json()["error"]["code"] == "ThrottlingException"


def test_contract_stream_malformed_frame(client, fake_backend):
    fake_backend.fragments = [b'{"generated_text": "Ahoy', b"\xff\xfe"]

    resp = client.post("/v1/chat/completions", json=_chat_body(stream=True))
    assert resp.status_code == 200
    events = parse_sse(resp.text)
    assert events[0]["choices"][0]["delta"]["content"] == "Ahoy"
    assert events[-1]["error"]["code"] == "malformed_backend_frame"
    assert "[DONE]" not in events
    assert fake_backend.closed


def test_contract_base_model_passthrough(client, fake_backend):
    fake_backend.reply = b'{"generated_text": "Arr"}'

    resp = client.post("/v1/chat/completions", json=_chat_body(model="Llama-3-8B", max_tokens=16))
    assert resp.status_code == 200
    envelope = fake_backend.calls[0][2]
    assert json.loads(envelope.body) == {
        "inputs": "You are a pirate chatbot who always responds in pirate speak!\nWho are you?",
        "parameters": {"max_new_tokens": 16},
    }


def test_contract_bedrock_route(client, fake_backend):
    fake_backend.fragments = [
        b'{"generation": "Hello", "stop_reason": null}',
        b'{"generation": " there", "stop_reason": "stop"}',
    ]

    resp = client.post(
        "/v1/chat/completions",
        json=_chat_body(model="Llama-3-8B-Instruct-Bedrock", stream=True, top_p=0.5),
    )
    chunks = parse_sse(resp.text)[:-1]
    assert [chunk["choices"][0]["delta"].get("content") for chunk in chunks] == ["Hello", " there", None]
    envelope = fake_backend.calls[0][2]
    body = json.loads(envelope.body)
    assert body["top_p"] == 0.5
    assert "prompt" in body


@pytest.mark.asyncio
async def test_stream_released_when_response_never_sent(directory, fake_backend):
    fake_backend.fragments = [b'{"generated_text": "Ahoy', b'!"}']
    registry = BackendRegistry({BACKEND_LMI: fake_backend})

    response = await chat_completions(
        ChatCompletionRequest(**_chat_body(stream=True)),
        endpoints=directory,
        backends=registry,
    )
    assert not fake_backend.closed

    # the client went away before the body was iterated
    await response.background()

    assert fake_backend.closed
    assert fake_backend.pulled == 0
