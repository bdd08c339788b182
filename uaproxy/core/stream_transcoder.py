#!/usr/bin/env python3
"""Transcode the upstream line protocol into OpenAI chat completion payloads.

The upstream streams newline-delimited ``key:value`` records::

    f:{"messageId":"msg-123"}
    g:"thinking..."
    0:"Hello"
    0:" world"
    e:{"finishReason":"stop"}
    d:{"finishReason":"stop"}

``0`` carries content, ``g`` carries reasoning, ``f`` carries metadata and
``e``/``d`` end the message. Any other key is ignored.
"""
import codecs
import enum
import json
import logging
import re
import time
import uuid
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional, Union

logger = logging.getLogger(__name__)

DONE_SENTINEL = 'data: [DONE]\n\n'

_KEY_PATTERN = re.compile(r'[a-z0-9]+')


@dataclass(frozen=True)
class ContentDelta:
    text: str


@dataclass(frozen=True)
class ReasoningDelta:
    text: str


@dataclass(frozen=True)
class MessageMeta:
    message_id: str


@dataclass(frozen=True)
class Done:
    pass


StreamEvent = Union[ContentDelta, ReasoningDelta, MessageMeta, Done]


class LineKind(enum.Enum):
    CONTENT = 'content'
    REASONING = 'reasoning'
    METADATA = 'metadata'
    TERMINAL = 'terminal'
    IGNORED = 'ignored'


KEY_KINDS = {
    '0': LineKind.CONTENT,
    'g': LineKind.REASONING,
    'f': LineKind.METADATA,
    'e': LineKind.TERMINAL,
    'd': LineKind.TERMINAL,
}


def decode_delta(value: str) -> str:
    """Decode a quoted delta value into text."""
    value = value.strip()
    if len(value) >= 2 and value.startswith('"') and value.endswith('"'):
        try:
            decoded = json.loads(value)
            if isinstance(decoded, str):
                return decoded
        except json.JSONDecodeError:
            pass
        value = value[1:-1]
    return value.replace('\\n', '\n')


def split_line(line: str):
    """Split a record into (key, value); None when it is not ``key:value``."""
    key, sep, value = line.partition(':')
    if not sep or not value or not _KEY_PATTERN.fullmatch(key):
        return None
    return key, value


def parse_line(line: str) -> Optional[StreamEvent]:
    """Turn one complete line into an event, or None if nothing is emitted."""
    parts = split_line(line)
    if parts is None:
        return None

    key, value = parts
    kind = KEY_KINDS.get(key, LineKind.IGNORED)

    if kind is LineKind.CONTENT:
        return ContentDelta(decode_delta(value))
    if kind is LineKind.REASONING:
        return ReasoningDelta(decode_delta(value))
    if kind is LineKind.TERMINAL:
        return Done()
    if kind is LineKind.METADATA:
        try:
            meta = json.loads(value)
        except json.JSONDecodeError:
            return None
        message_id = meta.get('messageId') if isinstance(meta, dict) else None
        if isinstance(message_id, str) and message_id:
            return MessageMeta(message_id)
    return None


class LineProtocolDecoder:
    """Incremental decoder that is independent of how bytes are chunked."""

    def __init__(self):
        self._decoder = codecs.getincrementaldecoder('utf-8')(errors='replace')
        self._buffer = ''
        self.finished = False

    def _process_line(self, line: str) -> Optional[StreamEvent]:
        line = line.rstrip('\r')
        if not line.strip():
            return None
        event = parse_line(line)
        if isinstance(event, Done):
            self.finished = True
        return event

    def feed(self, chunk: bytes) -> List[StreamEvent]:
        """Consume raw bytes and return the events of every complete line."""
        if self.finished:
            return []

        self._buffer += self._decoder.decode(chunk)
        lines = self._buffer.split('\n')
        self._buffer = lines.pop()

        events = []
        for line in lines:
            event = self._process_line(line)
            if event is not None:
                events.append(event)
                if self.finished:
                    break
        return events

    def flush(self) -> List[StreamEvent]:
        """Process whatever remains once the upstream body has ended."""
        if self.finished:
            return []
        remainder = self._buffer + self._decoder.decode(b'', final=True)
        self._buffer = ''
        event = self._process_line(remainder)
        return [event] if event is not None else []


async def iter_stream_events(byte_stream: AsyncIterator[bytes]) -> AsyncIterator[StreamEvent]:
    """Yield events until a terminal record or the end of the body.

    Exactly one ``Done`` is always yielded last.
    """
    decoder = LineProtocolDecoder()
    async for chunk in byte_stream:
        if not chunk:
            continue
        for event in decoder.feed(chunk):
            yield event
        if decoder.finished:
            return

    for event in decoder.flush():
        yield event
    if not decoder.finished:
        yield Done()


def format_sse(payload: Dict[str, Any]) -> str:
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n"


class ChatCompletionFramer:
    """Builds OpenAI-style chunk and completion objects for one response."""

    def __init__(self, model: str, completion_id: Optional[str] = None):
        self.model = model
        self.completion_id = completion_id or f"chatcmpl-{uuid.uuid4().hex}"
        self.created = int(time.time())
        self._role_sent = False

    def chunk(self, delta: Dict[str, Any], finish_reason: Optional[str] = None) -> Dict[str, Any]:
        return {
            'id': self.completion_id,
            'object': 'chat.completion.chunk',
            'created': self.created,
            'model': self.model,
            'choices': [{
                'index': 0,
                'delta': delta,
                'finish_reason': finish_reason,
            }],
        }

    def delta_chunk(self, event: Union[ContentDelta, ReasoningDelta]) -> Dict[str, Any]:
        if isinstance(event, ReasoningDelta):
            delta: Dict[str, Any] = {'reasoning_content': event.text}
        else:
            delta = {'content': event.text}
        if not self._role_sent:
            delta = {'role': 'assistant', **delta}
            self._role_sent = True
        return self.chunk(delta)

    def stop_chunk(self) -> Dict[str, Any]:
        return self.chunk({}, 'stop')

    def completion(self, content: str, reasoning: str = '') -> Dict[str, Any]:
        message: Dict[str, Any] = {'role': 'assistant', 'content': content}
        if reasoning:
            message['reasoning_content'] = reasoning
        return {
            'id': self.completion_id,
            'object': 'chat.completion',
            'created': self.created,
            'model': self.model,
            'choices': [{
                'index': 0,
                'message': message,
                'finish_reason': 'stop',
            }],
            'usage': {'prompt_tokens': 0, 'completion_tokens': 0, 'total_tokens': 0},
        }


async def stream_sse(events: AsyncIterator[StreamEvent], framer: ChatCompletionFramer) -> AsyncIterator[str]:
    """Re-frame events as SSE lines, ending with a stop chunk and ``[DONE]``.

    Errors raised while reading the upstream are reported in-band so the
    client can end its stream instead of hanging.
    """
    try:
        async for event in events:
            if isinstance(event, MessageMeta):
                framer.completion_id = event.message_id
            elif isinstance(event, (ContentDelta, ReasoningDelta)):
                yield format_sse(framer.delta_chunk(event))
            elif isinstance(event, Done):
                yield format_sse(framer.stop_chunk())
                break
    except Exception as exc:
        logger.error("Upstream stream interrupted: %s", exc)
        yield format_sse({'error': {'message': 'Stream interrupted', 'type': 'stream_error'}})
    yield DONE_SENTINEL


async def collect_completion(events: AsyncIterator[StreamEvent], framer: ChatCompletionFramer) -> Dict[str, Any]:
    """Accumulate every delta into a single ``chat.completion`` object."""
    content: List[str] = []
    reasoning: List[str] = []
    async for event in events:
        if isinstance(event, MessageMeta):
            framer.completion_id = event.message_id
        elif isinstance(event, ContentDelta):
            content.append(event.text)
        elif isinstance(event, ReasoningDelta):
            reasoning.append(event.text)
        elif isinstance(event, Done):
            break
    return framer.completion(''.join(content), ''.join(reasoning))
