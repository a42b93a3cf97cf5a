import logging
from collections.abc import Callable, Iterable
from typing import Protocol

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError
from starlette.concurrency import iterate_in_threadpool, run_in_threadpool

from chat_gateway.backend_requests import BackendEnvelope
from chat_gateway.endpoints import BACKEND_BEDROCK, BACKEND_LMI, ModelRoute
from chat_gateway.errors import BackendInvocationError
from chat_gateway.settings import Settings
from chat_gateway.streaming import FragmentSource

logger = logging.getLogger(__name__)

_SAGEMAKER_STREAM_ERRORS = ("ModelStreamError", "InternalStreamFailure")


class InferenceBackend(Protocol):
    async def invoke(
        self, route: ModelRoute, envelope: BackendEnvelope, inference_id: str
    ) -> bytes: ...

    async def invoke_streaming(
        self, route: ModelRoute, envelope: BackendEnvelope, inference_id: str
    ) -> FragmentSource: ...


def _client_config(settings: Settings) -> Config:
    # failed calls are reported to the client, never retried here
    return Config(
        retries={"total_max_attempts": 1, "mode": "standard"},
        connect_timeout=settings.backend_connect_timeout_seconds,
        read_timeout=settings.backend_read_timeout_seconds,
    )


def _backend_error(exc: Exception) -> BackendInvocationError:
    if isinstance(exc, ClientError):
        error = exc.response.get("Error", {})
        message = error.get("Message") or str(exc)
        code = error.get("Code") or "backend_error"
        return BackendInvocationError(message, code=code)
    return BackendInvocationError(str(exc) or "backend connection error", code="backend_unavailable")


class EventStreamRelay:
    """Payload bytes from a botocore event stream, one event per pull.

    ``aclose`` releases the HTTP response whether or not iteration has
    started, so a caller that gives up before the first pull does not leak
    the connection.
    """

    def __init__(self, event_stream, extract: Callable[[dict], bytes | None]) -> None:
        self._event_stream = event_stream
        self._extract = extract
        self._events = iterate_in_threadpool(event_stream)
        self.closed = False

    def __aiter__(self) -> "EventStreamRelay":
        return self

    async def __anext__(self) -> bytes:
        while not self.closed:
            try:
                event = await self._events.__anext__()
            except StopAsyncIteration:
                await self.aclose()
                raise
            except (BotoCoreError, ClientError) as exc:
                await self.aclose()
                raise _backend_error(exc) from exc
            try:
                payload = self._extract(event)
            except BackendInvocationError:
                await self.aclose()
                raise
            if payload is not None:
                return payload
        raise StopAsyncIteration

    async def aclose(self) -> None:
        if self.closed:
            return
        self.closed = True
        await self._events.aclose()
        self._event_stream.close()


def _sagemaker_payload(event: dict) -> bytes | None:
    if "PayloadPart" in event:
        return event["PayloadPart"].get("Bytes", b"")
    for key in _SAGEMAKER_STREAM_ERRORS:
        if key in event:
            raise BackendInvocationError(event[key].get("Message") or key, code=key)
    return None


def _bedrock_payload(event: dict) -> bytes | None:
    if "chunk" in event:
        return event["chunk"].get("bytes", b"")
    for key, detail in event.items():
        if key.endswith("Exception"):
            message = detail.get("message") if isinstance(detail, dict) else None
            raise BackendInvocationError(message or key, code=key)
    return None


class SageMakerBackend:
    """SageMaker runtime endpoints serving an LMI container."""

    def __init__(self, client) -> None:
        self._client = client

    @classmethod
    def from_settings(cls, settings: Settings) -> "SageMakerBackend":
        client = boto3.client(
            "sagemaker-runtime",
            region_name=settings.aws_region,
            config=_client_config(settings),
        )
        return cls(client)

    @staticmethod
    def _request_kwargs(route: ModelRoute, envelope: BackendEnvelope, inference_id: str) -> dict:
        kwargs = {
            "EndpointName": route.endpoint_name,
            "Body": envelope.body,
            "ContentType": envelope.content_type,
            "Accept": envelope.accept,
            "InferenceId": inference_id,
        }
        if route.inference_component:
            kwargs["InferenceComponentName"] = route.inference_component
        return kwargs

    async def invoke(self, route: ModelRoute, envelope: BackendEnvelope, inference_id: str) -> bytes:
        kwargs = self._request_kwargs(route, envelope, inference_id)
        if route.target_model:
            kwargs["TargetModel"] = route.target_model
        logger.info("invoke_endpoint endpoint=%s inference_id=%s", route.endpoint_name, inference_id)
        try:
            response = await run_in_threadpool(self._client.invoke_endpoint, **kwargs)
            return await run_in_threadpool(response["Body"].read)
        except (BotoCoreError, ClientError) as exc:
            logger.warning("invoke_endpoint failed endpoint=%s error=%s", route.endpoint_name, exc)
            raise _backend_error(exc) from exc

    async def invoke_streaming(
        self, route: ModelRoute, envelope: BackendEnvelope, inference_id: str
    ) -> "EventStreamRelay":
        # the streaming API has no TargetModel, multi-model endpoints are batch only
        kwargs = self._request_kwargs(route, envelope, inference_id)
        logger.info(
            "invoke_endpoint_with_response_stream endpoint=%s inference_id=%s",
            route.endpoint_name,
            inference_id,
        )
        try:
            response = await run_in_threadpool(
                self._client.invoke_endpoint_with_response_stream, **kwargs
            )
        except (BotoCoreError, ClientError) as exc:
            logger.warning("stream open failed endpoint=%s error=%s", route.endpoint_name, exc)
            raise _backend_error(exc) from exc
        return EventStreamRelay(response["Body"], _sagemaker_payload)


class BedrockBackend:
    """Bedrock runtime; ``endpoint_name`` holds the Bedrock model id."""

    def __init__(self, client) -> None:
        self._client = client

    @classmethod
    def from_settings(cls, settings: Settings) -> "BedrockBackend":
        client = boto3.client(
            "bedrock-runtime",
            region_name=settings.aws_region,
            config=_client_config(settings),
        )
        return cls(client)

    @staticmethod
    def _request_kwargs(route: ModelRoute, envelope: BackendEnvelope) -> dict:
        return {
            "modelId": route.endpoint_name,
            "body": envelope.body,
            "contentType": envelope.content_type,
            "accept": envelope.accept,
        }

    async def invoke(self, route: ModelRoute, envelope: BackendEnvelope, inference_id: str) -> bytes:
        logger.info("invoke_model model_id=%s inference_id=%s", route.endpoint_name, inference_id)
        try:
            response = await run_in_threadpool(
                self._client.invoke_model, **self._request_kwargs(route, envelope)
            )
            return await run_in_threadpool(response["body"].read)
        except (BotoCoreError, ClientError) as exc:
            logger.warning("invoke_model failed model_id=%s error=%s", route.endpoint_name, exc)
            raise _backend_error(exc) from exc

    async def invoke_streaming(
        self, route: ModelRoute, envelope: BackendEnvelope, inference_id: str
    ) -> "EventStreamRelay":
        logger.info(
            "invoke_model_with_response_stream model_id=%s inference_id=%s",
            route.endpoint_name,
            inference_id,
        )
        try:
            response = await run_in_threadpool(
                self._client.invoke_model_with_response_stream,
                **self._request_kwargs(route, envelope),
            )
        except (BotoCoreError, ClientError) as exc:
            logger.warning("stream open failed model_id=%s error=%s", route.endpoint_name, exc)
            raise _backend_error(exc) from exc
        return EventStreamRelay(response["body"], _bedrock_payload)


_BACKEND_FACTORIES = {
    BACKEND_LMI: SageMakerBackend.from_settings,
    BACKEND_BEDROCK: BedrockBackend.from_settings,
}


class BackendRegistry:
    def __init__(self, backends: dict[str, InferenceBackend]) -> None:
        self._backends = dict(backends)

    @classmethod
    def from_settings(cls, settings: Settings, kinds: Iterable[str]) -> "BackendRegistry":
        """Create one client per backend kind that the routing table uses."""
        return cls({kind: _BACKEND_FACTORIES[kind](settings) for kind in set(kinds)})

    def for_route(self, route: ModelRoute) -> InferenceBackend:
        try:
            return self._backends[route.backend]
        except KeyError:
            raise BackendInvocationError(
                f"no client configured for backend {route.backend}",
                code="backend_not_configured",
            ) from None
