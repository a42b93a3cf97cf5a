import logging
import time
from collections.abc import AsyncGenerator
from dataclasses import dataclass, replace

from chat_gateway.backend_requests import BackendEnvelope, SamplingParams, build_envelope, parse_reply
from chat_gateway.chat_templates import render_prompt, resolve_stop_marker
from chat_gateway.endpoints import EndpointDirectory, ModelRoute
from chat_gateway.errors import UnsupportedModelError
from chat_gateway.streaming import FragmentSource, classify, make_stream_decoder, reassemble, truncate_at_marker
from shared.schemas import (
    AssistantMessage,
    ChatCompletionChunk,
    ChatCompletionRequest,
    ChatCompletionResponse,
    Choice,
    ChoiceDelta,
    ChunkChoice,
    Usage,
)

ROLE_ASSISTANT = "assistant"

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PreparedCompletion:
    model: str
    route: ModelRoute
    prompt: str
    envelope: BackendEnvelope
    stop_marker: str


def prepare_completion(
    request: ChatCompletionRequest,
    directory: EndpointDirectory,
) -> PreparedCompletion:
    """Resolve everything the backend call needs, before anything is sent."""
    route = directory.lookup(request.model)
    if route is None:
        raise UnsupportedModelError(request.model, code="model_not_found")
    prompt = render_prompt(request.model, request.messages, request.context)
    stop_marker = resolve_stop_marker(request.model)
    envelope = build_envelope(route.backend, prompt, SamplingParams.from_request(request))
    return PreparedCompletion(
        model=request.model,
        route=route,
        prompt=prompt,
        envelope=envelope,
        stop_marker=stop_marker,
    )


@dataclass(frozen=True)
class ChunkState:
    completion_id: str
    created: int
    model: str
    role_sent: bool = False


def build_chunk(
    state: ChunkState,
    content: str | None,
    finish_reason: str | None = None,
) -> tuple[ChatCompletionChunk, ChunkState]:
    """Build the next chunk; only the first one of a stream names the role."""
    delta = ChoiceDelta(
        role=None if state.role_sent else ROLE_ASSISTANT,
        content=content,
    )
    chunk = ChatCompletionChunk(
        id=state.completion_id,
        created=state.created,
        model=state.model,
        choices=[ChunkChoice(index=0, delta=delta, finish_reason=finish_reason)],
    )
    return chunk, replace(state, role_sent=True)


async def stream_chat_completion(
    fragments: FragmentSource,
    prepared: PreparedCompletion,
    completion_id: str,
    created: int | None = None,
) -> AsyncGenerator[ChatCompletionChunk, None]:
    state = ChunkState(
        completion_id=completion_id,
        created=created if created is not None else int(time.time()),
        model=prepared.model,
    )
    events = reassemble(fragments, make_stream_decoder(prepared.route.backend))
    try:
        async for delta in classify(events, prepared.stop_marker):
            chunk, state = build_chunk(state, delta.text or None, delta.finish_reason)
            yield chunk
            if delta.finish_reason is not None:
                logger.info("stream finished model=%s finish_reason=%s", prepared.model, delta.finish_reason)
    finally:
        # stops pulling from the backend and releases its stream
        await events.aclose()


def create_chat_completion(
    reply: bytes,
    prepared: PreparedCompletion,
    completion_id: str,
    created: int | None = None,
) -> ChatCompletionResponse:
    text = parse_reply(prepared.route.backend, reply)
    content, finish_reason = truncate_at_marker(text, prepared.stop_marker)
    logger.info("completion finished model=%s finish_reason=%s", prepared.model, finish_reason)
    return ChatCompletionResponse(
        id=completion_id,
        created=created if created is not None else int(time.time()),
        model=prepared.model,
        choices=[
            Choice(
                index=0,
                message=AssistantMessage(role=ROLE_ASSISTANT, content=content),
                finish_reason=finish_reason,
            )
        ],
        usage=Usage(),
    )
