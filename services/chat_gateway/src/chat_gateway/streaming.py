"""Turning a fragmented backend byte stream into classified text deltas.

LMI endpoints stream a single JSON document, ``{"generated_text": "..."}``,
cut into payload parts at arbitrary byte offsets. A part can end inside a
multi-byte character, inside an escape sequence, or in the middle of the
opening prefix. :class:`GeneratedTextReassembler` buffers whatever cannot be
decoded yet and only ever exposes complete characters, so the concatenated
output does not depend on where the backend happened to cut the stream.

:class:`FinishReasonClassifier` then looks for the model's end-of-turn
marker in the decoded text and decides between ``stop`` and ``length``.
"""

import codecs
import enum
import json
import re
import string
from collections.abc import AsyncGenerator, AsyncIterator
from dataclasses import dataclass
from typing import Protocol

from chat_gateway.endpoints import BACKEND_BEDROCK, BACKEND_LMI
from chat_gateway.errors import MalformedBackendFrameError

GENERATED_TEXT_PREFIX = '{"generated_text": "'

FINISH_STOP = "stop"
FINISH_LENGTH = "length"

_SIMPLE_ESCAPES = {
    '"': '"',
    "\\": "\\",
    "/": "/",
    "b": "\b",
    "f": "\f",
    "n": "\n",
    "r": "\r",
    "t": "\t",
}
_STRING_SPECIALS = re.compile(r'["\\]')
# tail of a verbatim stream that may turn out to be the closing `"}`
_OPEN_SUFFIX = re.compile(r'"\s*(?:\}\s*)?\Z')
_CLOSING_SUFFIX = re.compile(r'"\s*\}\s*\Z')
_HEX_DIGITS = frozenset(string.hexdigits)


class StreamPhase(enum.Enum):
    AWAITING_PREFIX = "awaiting-prefix"
    STREAMING = "streaming"
    AWAITING_SUFFIX_CONFIRM = "awaiting-suffix-confirm"
    CLOSED = "closed"


class StreamDecoder(Protocol):
    def feed(self, fragment: bytes) -> str: ...

    def close(self) -> str: ...


class FragmentSource(Protocol):
    """Backend payload bytes; closing it releases the backend response."""

    def __aiter__(self) -> AsyncIterator[bytes]: ...

    async def aclose(self) -> None: ...


def _parse_hex4(digits: str) -> int:
    if len(digits) != 4 or not set(digits) <= _HEX_DIGITS:
        raise MalformedBackendFrameError(f"invalid unicode escape: \\u{digits}")
    return int(digits, 16)


def _decode_escape(text: str, pos: int) -> tuple[str, int]:
    """Decode the escape sequence starting at ``text[pos]`` (a backslash).

    Returns the decoded text and how many characters it used, or ``("", 0)``
    when the sequence is not complete yet.
    """
    if pos + 1 >= len(text):
        return "", 0
    code = text[pos + 1]
    if code in _SIMPLE_ESCAPES:
        return _SIMPLE_ESCAPES[code], 2
    if code != "u":
        raise MalformedBackendFrameError(f"invalid escape sequence: \\{code}")
    if pos + 6 > len(text):
        return "", 0
    value = _parse_hex4(text[pos + 2 : pos + 6])
    if 0xDC00 <= value <= 0xDFFF:
        raise MalformedBackendFrameError("unpaired low surrogate in backend stream")
    if not 0xD800 <= value <= 0xDBFF:
        return chr(value), 6

    # high surrogate, the low half must follow as another \uXXXX
    if pos + 12 > len(text):
        if not "\\u".startswith(text[pos + 6 : pos + 8]):
            raise MalformedBackendFrameError("unpaired high surrogate in backend stream")
        return "", 0
    if text[pos + 6 : pos + 8] != "\\u":
        raise MalformedBackendFrameError("unpaired high surrogate in backend stream")
    low = _parse_hex4(text[pos + 8 : pos + 12])
    if not 0xDC00 <= low <= 0xDFFF:
        raise MalformedBackendFrameError("unpaired high surrogate in backend stream")
    return chr(0x10000 + ((value - 0xD800) << 10) + (low - 0xDC00)), 12


class GeneratedTextReassembler:
    """Incremental decoder for the LMI ``generated_text`` stream.

    The pending buffer only grows at the end (``feed``) and only shrinks from
    the front (consumed characters); nothing is ever re-read.
    """

    def __init__(self) -> None:
        self._utf8 = codecs.getincrementaldecoder("utf-8")(errors="strict")
        self._pending = ""
        self._verbatim = False
        self.phase = StreamPhase.AWAITING_PREFIX

    @property
    def pending(self) -> str:
        return self._pending

    def feed(self, fragment: bytes) -> str:
        try:
            self._pending += self._utf8.decode(fragment)
        except UnicodeDecodeError as exc:
            raise MalformedBackendFrameError(f"backend stream is not valid UTF-8: {exc}") from exc
        return self._drain(final=False)

    def close(self) -> str:
        try:
            self._pending += self._utf8.decode(b"", final=True)
        except UnicodeDecodeError as exc:
            raise MalformedBackendFrameError(
                "backend stream ended inside a multi-byte character"
            ) from exc
        text = self._drain(final=True)
        if self._pending:
            raise MalformedBackendFrameError("backend stream ended inside an escape sequence")
        return text

    def _drain(self, final: bool) -> str:
        if self.phase is StreamPhase.AWAITING_PREFIX and not self._consume_prefix(final):
            return ""
        if self._verbatim:
            return self._drain_verbatim(final)

        pending = self._pending
        pos = 0
        out = []
        while pos < len(pending):
            if self.phase is StreamPhase.STREAMING:
                char = pending[pos]
                if char == '"':
                    self.phase = StreamPhase.AWAITING_SUFFIX_CONFIRM
                    pos += 1
                elif char == "\\":
                    decoded, width = _decode_escape(pending, pos)
                    if not width:
                        break
                    out.append(decoded)
                    pos += width
                else:
                    match = _STRING_SPECIALS.search(pending, pos)
                    end = match.start() if match else len(pending)
                    out.append(pending[pos:end])
                    pos = end
            elif self.phase is StreamPhase.AWAITING_SUFFIX_CONFIRM:
                char = pending[pos]
                if char == "}":
                    self.phase = StreamPhase.CLOSED
                elif not char.isspace():
                    raise MalformedBackendFrameError(
                        f"unexpected {char!r} after the end of generated_text"
                    )
                pos += 1
            else:
                if pending[pos:].strip():
                    raise MalformedBackendFrameError("unexpected data after the end of the backend document")
                pos = len(pending)
        self._pending = pending[pos:]
        return "".join(out)

    def _drain_verbatim(self, final: bool) -> str:
        pending = self._pending
        if final:
            self._pending = ""
            match = _CLOSING_SUFFIX.search(pending)
            return pending[: match.start()] if match else pending
        match = _OPEN_SUFFIX.search(pending)
        cut = match.start() if match else len(pending)
        self._pending = pending[cut:]
        return pending[:cut]

    def _consume_prefix(self, final: bool) -> bool:
        if not final and len(self._pending) < len(GENERATED_TEXT_PREFIX):
            if GENERATED_TEXT_PREFIX.startswith(self._pending):
                return False
        if self._pending.startswith(GENERATED_TEXT_PREFIX):
            self._pending = self._pending[len(GENERATED_TEXT_PREFIX) :]
        else:
            # not a generated_text document, relay the text as-is
            self._verbatim = True
        self.phase = StreamPhase.STREAMING
        return True


class GenerationChunkDecoder:
    """Bedrock streams one complete JSON object per event."""

    def feed(self, fragment: bytes) -> str:
        try:
            payload = json.loads(fragment)
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise MalformedBackendFrameError(f"invalid backend stream event: {exc}") from exc
        text = payload.get("generation") if isinstance(payload, dict) else None
        if text is None:
            return ""
        if not isinstance(text, str):
            raise MalformedBackendFrameError("backend stream event has non-text generation")
        return text

    def close(self) -> str:
        return ""


def make_stream_decoder(backend: str) -> StreamDecoder:
    if backend == BACKEND_LMI:
        return GeneratedTextReassembler()
    if backend == BACKEND_BEDROCK:
        return GenerationChunkDecoder()
    raise ValueError(f"unknown backend kind: {backend}")


@dataclass(frozen=True)
class TextDelta:
    text: str


class EndOfStream:
    def __repr__(self) -> str:
        return "END_OF_STREAM"


END_OF_STREAM = EndOfStream()

StreamEvent = TextDelta | EndOfStream


async def reassemble(
    fragments: FragmentSource,
    decoder: StreamDecoder,
) -> AsyncGenerator[StreamEvent, None]:
    """Relay decoded deltas, then exactly one END_OF_STREAM.

    The next fragment is only requested once the previous delta has been
    taken by the consumer. Closing this generator closes ``fragments``.
    """
    try:
        async for fragment in fragments:
            text = decoder.feed(fragment)
            if text:
                yield TextDelta(text)
        tail = decoder.close()
        if tail:
            yield TextDelta(tail)
        yield END_OF_STREAM
    finally:
        await fragments.aclose()


def _partial_marker_length(text: str, marker: str) -> int:
    """Length of the longest suffix of ``text`` that is a proper prefix of ``marker``."""
    for size in range(min(len(text), len(marker) - 1), 0, -1):
        if marker.startswith(text[-size:]):
            return size
    return 0


class FinishReasonClassifier:
    def __init__(self, marker: str) -> None:
        self.marker = marker
        self.finish_reason: str | None = None
        self._held = ""

    def feed(self, text: str) -> str:
        """Return the part of ``text`` that is safe to show.

        A tail that could be the start of the marker is held back until the
        next delta settles it.
        """
        text = self._held + text
        self._held = ""
        index = text.find(self.marker)
        if index >= 0:
            self.finish_reason = FINISH_STOP
            return text[:index]
        keep = _partial_marker_length(text, self.marker)
        if keep:
            self._held = text[-keep:]
            return text[:-keep]
        return text

    def finish(self) -> str:
        # no marker seen; a clean end and a token limit look the same here
        self.finish_reason = FINISH_LENGTH
        held, self._held = self._held, ""
        return held


@dataclass(frozen=True)
class ClassifiedDelta:
    text: str
    finish_reason: str | None = None


async def classify(
    events: AsyncIterator[StreamEvent],
    marker: str,
) -> AsyncGenerator[ClassifiedDelta, None]:
    classifier = FinishReasonClassifier(marker)
    async for event in events:
        if isinstance(event, EndOfStream):
            held = classifier.finish()
            if held:
                yield ClassifiedDelta(held)
            yield ClassifiedDelta("", classifier.finish_reason)
            return
        text = classifier.feed(event.text)
        if classifier.finish_reason == FINISH_STOP:
            yield ClassifiedDelta(text, FINISH_STOP)
            return
        if text:
            yield ClassifiedDelta(text)


def truncate_at_marker(text: str, marker: str) -> tuple[str, str]:
    index = text.find(marker)
    if index >= 0:
        return text[:index], FINISH_STOP
    return text, FINISH_LENGTH
