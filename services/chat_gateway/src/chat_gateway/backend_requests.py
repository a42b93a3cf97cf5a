import json
from dataclasses import dataclass

from chat_gateway.endpoints import BACKEND_BEDROCK, BACKEND_LMI
from chat_gateway.errors import MalformedBackendFrameError
from shared.schemas import ChatCompletionRequest

JSON_CONTENT_TYPE = "application/json"


@dataclass(frozen=True)
class SamplingParams:
    temperature: float | None = None
    top_p: float | None = None
    top_k: int | None = None
    max_tokens: int | None = None
    do_sample: bool | None = None

    @classmethod
    def from_request(cls, request: ChatCompletionRequest) -> "SamplingParams":
        return cls(
            temperature=request.temperature,
            top_p=request.top_p,
            top_k=request.top_k,
            max_tokens=request.max_tokens,
            do_sample=request.do_sample,
        )


@dataclass(frozen=True)
class BackendEnvelope:
    body: bytes
    content_type: str = JSON_CONTENT_TYPE
    accept: str = JSON_CONTENT_TYPE


def _without_unset(values: dict) -> dict:
    # unset keys are omitted, never sent as null
    return {key: value for key, value in values.items() if value is not None}


def _encode(payload: dict) -> bytes:
    return json.dumps(payload, ensure_ascii=False).encode("utf-8")


def _lmi_payload(prompt: str, params: SamplingParams) -> dict:
    return {
        "inputs": prompt,
        "parameters": _without_unset(
            {
                "temperature": params.temperature,
                "top_k": params.top_k,
                "top_p": params.top_p,
                "max_new_tokens": params.max_tokens,
                "do_sample": params.do_sample,
            }
        ),
    }


def _bedrock_payload(prompt: str, params: SamplingParams) -> dict:
    return {
        "prompt": prompt,
        **_without_unset(
            {
                "max_gen_len": params.max_tokens,
                "temperature": params.temperature,
                "top_p": params.top_p,
            }
        ),
    }


_PAYLOAD_BUILDERS = {
    BACKEND_LMI: _lmi_payload,
    BACKEND_BEDROCK: _bedrock_payload,
}

_REPLY_TEXT_FIELDS = {
    BACKEND_LMI: "generated_text",
    BACKEND_BEDROCK: "generation",
}


def build_envelope(backend: str, prompt: str, params: SamplingParams) -> BackendEnvelope:
    try:
        builder = _PAYLOAD_BUILDERS[backend]
    except KeyError:
        raise ValueError(f"unknown backend kind: {backend}") from None
    return BackendEnvelope(body=_encode(builder(prompt, params)))


def parse_reply(backend: str, body: bytes) -> str:
    """Extract the generated text from a complete (non-streamed) backend reply."""
    field = _REPLY_TEXT_FIELDS[backend]
    try:
        payload = json.loads(body)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise MalformedBackendFrameError(f"backend reply is not valid JSON: {exc}") from exc
    # LMI containers may wrap the prediction in a single-element list
    if isinstance(payload, list) and len(payload) == 1:
        payload = payload[0]
    text = payload.get(field) if isinstance(payload, dict) else None
    if not isinstance(text, str):
        raise MalformedBackendFrameError(f"backend reply has no '{field}' text")
    return text
