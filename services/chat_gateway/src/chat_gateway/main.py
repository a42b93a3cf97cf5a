import json
import logging
import uuid
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.background import BackgroundTask

from chat_gateway.backends import BackendRegistry
from chat_gateway.completions import create_chat_completion, prepare_completion, stream_chat_completion
from chat_gateway.endpoints import EndpointDirectory
from chat_gateway.errors import GatewayError
from chat_gateway.logging_config import configure_logging
from chat_gateway.request_id import REQUEST_ID_HEADER, new_inference_id, set_request_id
from chat_gateway.settings import get_settings
from shared.schemas import ChatCompletionRequest, ModelCard, ModelList

settings = get_settings()
configure_logging(settings.log_level)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    directory = EndpointDirectory.load(settings.endpoints_config)
    app.state.endpoints = directory
    app.state.backends = BackendRegistry.from_settings(
        settings, (route.backend for route in directory.routes())
    )
    yield


app = FastAPI(title="Chat Gateway", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_allow_origins,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
)


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
    set_request_id(request_id)
    if settings.app_env.lower() == "prod":
        if request.url.path in ("/docs", "/openapi.json"):
            return JSONResponse(status_code=404, content={"detail": "not found"})
    response = await call_next(request)
    response.headers[REQUEST_ID_HEADER] = request_id
    return response


@app.exception_handler(GatewayError)
async def gateway_error_handler(_request: Request, exc: GatewayError):
    logger.warning("request failed code=%s status=%s", exc.code, exc.status_code)
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


def get_endpoints(request: Request) -> EndpointDirectory:
    return request.app.state.endpoints


def get_backends(request: Request) -> BackendRegistry:
    return request.app.state.backends


def _format_sse(data: str) -> str:
    return f"data: {data}\n\n"


@app.get("/health")
def health():
    return {"status": "ok"}


@app.get("/v1/models")
def list_models(endpoints: EndpointDirectory = Depends(get_endpoints)):
    return ModelList(
        data=[
            ModelCard(id=route.model, owned_by=route.backend.lower())
            for route in endpoints.routes()
        ]
    )


@app.post("/v1/chat/completions")
async def chat_completions(
    payload: ChatCompletionRequest,
    endpoints: EndpointDirectory = Depends(get_endpoints),
    backends: BackendRegistry = Depends(get_backends),
):
    prepared = prepare_completion(payload, endpoints)
    backend = backends.for_route(prepared.route)
    inference_id = new_inference_id()

    logger.info(
        "chat completion model=%s endpoint=%s messages=%s stream=%s",
        payload.model,
        prepared.route.endpoint_name,
        len(payload.messages),
        payload.stream,
    )

    if payload.stream:
        fragments = await backend.invoke_streaming(prepared.route, prepared.envelope, inference_id)

        async def event_stream():
            try:
                async for chunk in stream_chat_completion(fragments, prepared, inference_id):
                    yield _format_sse(chunk.model_dump_json())
            except GatewayError as exc:
                logger.warning("stream aborted code=%s", exc.code)
                yield _format_sse(json.dumps(exc.to_payload(), ensure_ascii=False))
                return
            finally:
                await fragments.aclose()
            yield _format_sse("[DONE]")

        # releases the backend stream even if event_stream never started
        return StreamingResponse(
            event_stream(),
            media_type="text/event-stream",
            background=BackgroundTask(fragments.aclose),
        )

    reply = await backend.invoke(prepared.route, prepared.envelope, inference_id)
    return create_chat_completion(reply, prepared, inference_id)
