from __future__ import annotations

import codecs
import json
import logging
import time
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any
from uuid import uuid4

from qwen_chat_gateway.errors import BackendReportedError, StreamDecodeError
from qwen_chat_gateway.modes import ChatMode

logger = logging.getLogger("uvicorn.error")

DONE_FRAME = b"data: [DONE]\n\n"
DEFAULT_MAX_BUFFER_CHARS = 1024 * 1024

THINK_OPEN = "<think>\n"
THINK_CLOSE = "\n</think>\n"

_ASSET_PHASES = {"image_gen", "video_gen", "generatingAsset", "generating_asset"}
_SSE_FIELD_PREFIXES = ("event:", "id:", "retry:", ":")
_TERMINAL_MARKERS = {"[DONE]"}
_FRAME_SEPARATOR = "\n\n"


class StreamPhase(str, Enum):
    IDLE = "idle"
    THINKING = "thinking"
    ANSWERING = "answering"
    GENERATING_ASSET = "generating_asset"


@dataclass(slots=True)
class FrameContent:
    content: str = ""
    phase: str | None = None
    status: str | None = None
    finish_reason: str | None = None


Extractor = Callable[[dict[str, Any]], FrameContent | None]


def _as_text(value: Any) -> str:
    return value if isinstance(value, str) else ""


def _as_optional_str(value: Any) -> str | None:
    return value if isinstance(value, str) and value else None


def extract_choices_delta(frame: dict[str, Any]) -> FrameContent | None:
    choices = frame.get("choices")
    if not isinstance(choices, list) or not choices:
        return None
    choice = choices[0]
    if not isinstance(choice, dict):
        return None
    delta = choice.get("delta")
    if not isinstance(delta, dict):
        delta = choice.get("message")
    if not isinstance(delta, dict):
        delta = {}
    return FrameContent(
        content=_as_text(delta.get("content")),
        phase=_as_optional_str(delta.get("phase")),
        status=_as_optional_str(delta.get("status")),
        finish_reason=_as_optional_str(choice.get("finish_reason")),
    )


def extract_bare_content(frame: dict[str, Any]) -> FrameContent | None:
    if not isinstance(frame.get("content"), str):
        return None
    return FrameContent(
        content=frame["content"],
        phase=_as_optional_str(frame.get("phase")),
        status=_as_optional_str(frame.get("status")),
        finish_reason=_as_optional_str(frame.get("finish_reason")),
    )


def extract_result_or_data(frame: dict[str, Any]) -> FrameContent | None:
    for key in ("result", "data"):
        value = frame.get(key)
        if isinstance(value, str):
            return FrameContent(content=value)
        if isinstance(value, dict) and isinstance(value.get("content"), str):
            return FrameContent(
                content=value["content"],
                phase=_as_optional_str(value.get("phase")),
                status=_as_optional_str(value.get("status")),
                finish_reason=_as_optional_str(value.get("finish_reason")),
            )
    return None


CONTENT_EXTRACTORS: tuple[Extractor, ...] = (
    extract_choices_delta,
    extract_bare_content,
    extract_result_or_data,
)


def extract_frame_content(frame: dict[str, Any]) -> FrameContent | None:
    for extractor in CONTENT_EXTRACTORS:
        extracted = extractor(frame)
        if extracted is not None:
            return extracted
    return None


def _is_asset_url(text: str) -> bool:
    candidate = text.strip()
    return (
        candidate.startswith(("http://", "https://"))
        and not any(char.isspace() for char in candidate)
    )


def decode_frame(payload: str) -> Any:
    try:
        return json.loads(payload)
    except ValueError as exc:
        raise StreamDecodeError(f"malformed frame: {exc}") from exc


def backend_error_from_frame(
    frame: dict[str, Any], fallback_request_id: str
) -> BackendReportedError:
    data = frame.get("data") if isinstance(frame.get("data"), dict) else {}
    code = data.get("code") or frame.get("code") or "unknown"
    details = (
        data.get("details")
        or data.get("message")
        or frame.get("message")
        or frame.get("msg")
        or "Backend reported an error."
    )
    request_id = frame.get("request_id") or frame.get("requestId") or fallback_request_id
    return BackendReportedError(str(details), code=str(code), request_id=str(request_id))


@dataclass(slots=True)
class StreamState:
    receive_buffer: str = ""
    seen_asset_urls: set[str] = field(default_factory=set)
    phase: StreamPhase = StreamPhase.IDLE
    chunk_sequence: int = 0
    error_raised: bool = False
    think_open: bool = False
    saw_boundary: bool = False
    skip_to_boundary: bool = False
    sent_role: bool = False
    finished: bool = False


class StreamTranslator:
    """Turns one backend event stream into OpenAI chat.completion.chunk frames.

    One instance per request. ``feed`` accepts raw bytes as they arrive and
    returns the SSE frames that became ready; ``finish`` flushes whatever is
    left and always ends with a single ``data: [DONE]`` frame.
    """

    def __init__(
        self,
        *,
        model: str,
        mode: ChatMode = ChatMode.TEXT,
        request_id: str | None = None,
        max_buffer_chars: int = DEFAULT_MAX_BUFFER_CHARS,
    ) -> None:
        self.model = model
        self.mode = mode
        self.request_id = request_id or uuid4().hex[:12]
        self.completion_id = f"chatcmpl-{uuid4()}"
        self.created = int(time.time())
        self.max_buffer_chars = max(1, int(max_buffer_chars))
        self.state = StreamState()
        self.text_parts: list[str] = []
        self.finish_reason: str | None = None
        self.error: BackendReportedError | None = None
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    def _chunk(self, delta: dict[str, Any], finish_reason: str | None = None) -> bytes:
        if not self.state.sent_role:
            self.state.sent_role = True
            delta = {"role": "assistant", **delta}
        self.state.chunk_sequence += 1
        chunk = {
            "id": self.completion_id,
            "object": "chat.completion.chunk",
            "created": self.created,
            "model": self.model,
            "choices": [
                {
                    "index": 0,
                    "delta": delta,
                    "finish_reason": finish_reason,
                }
            ],
        }
        return f"data: {json.dumps(chunk, ensure_ascii=False, separators=(',', ':'))}\n\n".encode(
            "utf-8"
        )

    def _content_chunk(self, content: str, finish_reason: str | None = None) -> bytes:
        if content:
            self.text_parts.append(content)
        if finish_reason is not None:
            self.finish_reason = finish_reason
        return self._chunk({"content": content} if content else {}, finish_reason)

    def _raise_error(self, frame: dict[str, Any]) -> list[bytes]:
        error = backend_error_from_frame(frame, self.request_id)
        self.error = error
        self.state.error_raised = True
        self.state.receive_buffer = ""
        logger.warning(
            "stream_backend_error request_id=%s code=%s details=%s",
            error.request_id,
            error.code,
            error.message,
        )
        message = (
            f"Upstream error [{error.code}]: {error.message} "
            f"(request_id={error.request_id})"
        )
        return [self._content_chunk(message, "stop"), DONE_FRAME]

    @staticmethod
    def _parse_error_object(text: str) -> dict[str, Any] | None:
        candidate = text.strip()
        if candidate.startswith("data:"):
            candidate = candidate[5:].strip()
        if not candidate.startswith("{") or not candidate.endswith("}"):
            return None
        try:
            parsed = json.loads(candidate)
        except ValueError:
            return None
        if isinstance(parsed, dict) and parsed.get("success") is False:
            return parsed
        return None

    def feed(self, data: bytes) -> list[bytes]:
        if self.state.error_raised:
            return []
        text = self._decoder.decode(data).replace("\r\n", "\n")
        self.state.receive_buffer += text
        # JSON only needs re-parsing once a chunk could have closed an object.
        return self._drain(closes_object=text.rstrip().endswith("}"))

    def _resync(self) -> bool:
        """Drop the tail of an overflowed frame; True once a frame start is found."""
        state = self.state
        buffer = state.receive_buffer
        if buffer.startswith("data:"):
            state.skip_to_boundary = False
            return True
        resume_points: list[int] = []
        separator = buffer.find(_FRAME_SEPARATOR)
        if separator != -1:
            resume_points.append(separator + len(_FRAME_SEPARATOR))
        data_line = buffer.find("\ndata:")
        if data_line != -1:
            resume_points.append(data_line + 1)
        if resume_points:
            state.receive_buffer = buffer[min(resume_points) :]
            state.skip_to_boundary = False
            return True
        # Keep a trailing "\n" or "\nda" so a boundary split across chunks is still found.
        newline = buffer.rfind("\n")
        tail = buffer[newline:] if newline != -1 else ""
        state.receive_buffer = tail if "\ndata:".startswith(tail) else ""
        return False

    def _leading_data_line(self) -> str | None:
        buffer = self.state.receive_buffer
        end = buffer.find("\n")
        if end == -1 or buffer.startswith(_FRAME_SEPARATOR, end):
            return None
        line = buffer[:end]
        if line.startswith("data:") and self._is_complete_json(line[5:]):
            return line
        return None

    def _drain(self, *, closes_object: bool = True) -> list[bytes]:
        state = self.state
        output: list[bytes] = []

        if state.skip_to_boundary and not self._resync():
            return output

        while not state.error_raised:
            line = self._leading_data_line()
            if line is not None:
                state.receive_buffer = state.receive_buffer[len(line) + 1 :]
                output.extend(self._translate_line(line))
                continue
            block, separator, rest = state.receive_buffer.partition(_FRAME_SEPARATOR)
            if not separator:
                break
            state.receive_buffer = rest
            state.saw_boundary = True
            output.extend(self._translate_block(block))

        if state.error_raised:
            return output

        pending = state.receive_buffer
        if not state.saw_boundary and closes_object:
            # An error body may span several lines before any frame separator arrives.
            error_frame = self._parse_error_object(pending)
            if error_frame is not None:
                output.extend(self._raise_error(error_frame))
                return output

        if (
            closes_object
            and pending.startswith("data:")
            and "\n" not in pending
            and self._is_complete_json(pending[5:])
        ):
            state.receive_buffer = ""
            output.extend(self._translate_line(pending))
        elif len(pending) > self.max_buffer_chars:
            error_frame = self._parse_error_object(pending)
            if error_frame is not None:
                output.extend(self._raise_error(error_frame))
                return output
            logger.warning(
                "stream_buffer_overflow request_id=%s dropped_chars=%d limit=%d",
                self.request_id,
                len(pending),
                self.max_buffer_chars,
            )
            state.receive_buffer = ""
            state.skip_to_boundary = True
        return output

    def _translate_block(self, block: str) -> list[bytes]:
        error_frame = self._parse_error_object(block)
        if error_frame is not None:
            return self._raise_error(error_frame)
        output: list[bytes] = []
        for line in block.split("\n"):
            if self.state.error_raised:
                break
            output.extend(self._translate_line(line))
        return output

    @staticmethod
    def _is_complete_json(text: str) -> bool:
        candidate = text.strip()
        if not candidate.startswith("{") or not candidate.endswith("}"):
            return False
        try:
            json.loads(candidate)
        except ValueError:
            return False
        return True

    def _translate_line(self, raw_line: str) -> list[bytes]:
        line = raw_line.strip()
        if not line or self.state.error_raised:
            return []
        if line.startswith("data:"):
            payload = line[5:].strip()
        elif line.startswith(_SSE_FIELD_PREFIXES):
            return []
        else:
            payload = line
        if not payload or payload in _TERMINAL_MARKERS:
            return []

        if payload[0] not in "{[":
            # Best-effort passthrough of plain-text fragments.
            return [self._content_chunk(payload)]

        try:
            frame = decode_frame(payload)
        except StreamDecodeError as exc:
            logger.warning(
                "stream_frame_decode_error request_id=%s error=%s preview=%s",
                self.request_id,
                exc.message,
                payload[:120],
            )
            return []
        if not isinstance(frame, dict):
            return []
        if frame.get("success") is False:
            return self._raise_error(frame)
        return self._translate_frame(frame)

    def _translate_frame(self, frame: dict[str, Any]) -> list[bytes]:
        extracted = extract_frame_content(frame)
        if extracted is None:
            return []
        state = self.state

        prefix = ""
        if extracted.phase == "think":
            state.phase = StreamPhase.THINKING
            if not state.think_open:
                state.think_open = True
                prefix = THINK_OPEN
        elif extracted.phase == "answer":
            state.phase = StreamPhase.ANSWERING
            if state.think_open:
                state.think_open = False
                prefix = THINK_CLOSE
        elif extracted.phase in _ASSET_PHASES:
            state.phase = StreamPhase.GENERATING_ASSET

        completes = extracted.finish_reason == "stop" or (
            extracted.status == "finished" and extracted.phase != "think"
        )

        content = extracted.content
        asset_context = (
            state.phase is StreamPhase.GENERATING_ASSET or self.mode.produces_assets
        )
        if asset_context and _is_asset_url(content):
            url = content.strip()
            if url in state.seen_asset_urls:
                content = ""
            else:
                state.seen_asset_urls.add(url)
                label = "video" if self.mode is ChatMode.VIDEO else "image"
                content = f"![{label}]({url})"

        if completes and state.think_open:
            state.think_open = False
            content = f"{content}{THINK_CLOSE}"

        text = f"{prefix}{content}"
        if completes:
            if state.finished:
                return [self._content_chunk(text)] if text else []
            state.finished = True
            return [self._content_chunk(text, "stop")]
        if not text:
            return []
        return [self._content_chunk(text)]

    def finish(self) -> list[bytes]:
        state = self.state
        if state.error_raised:
            return []
        state.receive_buffer += self._decoder.decode(b"", final=True)
        output: list[bytes] = []
        remainder = "" if state.skip_to_boundary else state.receive_buffer
        state.receive_buffer = ""
        if remainder.strip():
            output.extend(self._translate_block(remainder))
            if state.error_raised:
                return output
        logger.info(
            "stream_complete request_id=%s chunks=%d text_chars=%d assets=%d finish_reason=%s",
            self.request_id,
            state.chunk_sequence,
            len("".join(self.text_parts)),
            len(state.seen_asset_urls),
            self.finish_reason,
        )
        output.append(DONE_FRAME)
        return output

    async def translate(self, chunks: AsyncIterator[bytes]) -> AsyncIterator[bytes]:
        async for data in chunks:
            for frame in self.feed(data):
                yield frame
            if self.state.error_raised:
                return
        for frame in self.finish():
            yield frame

    @property
    def text(self) -> str:
        return "".join(self.text_parts)
