import json
from collections.abc import AsyncGenerator


class FakeBackend:
    """In-memory backend returning canned replies and recording calls."""

    def __init__(self, reply: bytes = b"", fragments: list[bytes] | None = None, error=None):
        self.reply = reply
        self.fragments = fragments or []
        self.error = error
        self.calls = []
        self.pulled = 0
        self.closed = False

    async def invoke(self, route, envelope, inference_id):
        self.calls.append(("invoke", route, envelope, inference_id))
        if self.error:
            raise self.error
        return self.reply

    async def invoke_streaming(self, route, envelope, inference_id):
        self.calls.append(("invoke_streaming", route, envelope, inference_id))
        if self.error:
            raise self.error
        return FakeFragmentStream(self)


class FakeFragmentStream:
    """Hands out the backend's fragments; closing works before the first pull."""

    def __init__(self, backend: FakeBackend):
        self._backend = backend

    def __aiter__(self):
        return self

    async def __anext__(self) -> bytes:
        backend = self._backend
        if backend.closed or backend.pulled >= len(backend.fragments):
            raise StopAsyncIteration
        backend.pulled += 1
        return backend.fragments[backend.pulled - 1]

    async def aclose(self) -> None:
        self._backend.closed = True


async def fragments_of(*parts: bytes) -> AsyncGenerator[bytes, None]:
    for part in parts:
        yield part


def lmi_document(text: str) -> bytes:
    return json.dumps({"generated_text": text}, ensure_ascii=False).encode("utf-8")


def parse_sse(body: str) -> list:
    events = []
    for block in body.split("\n\n"):
        if not block.startswith("data: "):
            continue
        data = block[len("data: ") :]
        events.append(data if data == "[DONE]" else json.loads(data))
    return events
