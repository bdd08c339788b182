#!/usr/bin/env python3
"""Normalise OpenAI-style chat messages into the upstream message schema."""
import datetime
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Sequence, Tuple, Union

logger = logging.getLogger(__name__)

SYSTEM_INSTRUCTIONS_LABEL = '[System Instructions]:'
PLACEHOLDER_TEXT = 'Hello'

SYSTEM_ROLES = {'system', 'developer'}


# Content shapes accepted from clients

@dataclass(frozen=True)
class TextContent:
    text: str


@dataclass(frozen=True)
class ListContent:
    items: Tuple['Content', ...]


@dataclass(frozen=True)
class WrappedContent:
    """An object carrying a nested ``text`` field (e.g. a text part)."""
    inner: 'Content'


@dataclass(frozen=True)
class EmptyContent:
    """Missing content, or an object without text such as an image part."""


@dataclass(frozen=True)
class UnrecognizedContent:
    raw: Any


Content = Union[TextContent, ListContent, WrappedContent, EmptyContent, UnrecognizedContent]


def classify_content(raw: Any) -> Content:
    """Map a raw JSON value onto the closed set of content shapes."""
    if raw is None or raw == '':
        return EmptyContent()
    if isinstance(raw, str):
        return TextContent(raw)
    if isinstance(raw, (list, tuple)):
        return ListContent(tuple(classify_content(item) for item in raw))
    if isinstance(raw, dict):
        if raw.get('text'):
            return WrappedContent(classify_content(raw['text']))
        return EmptyContent()
    return UnrecognizedContent(raw)


def extract_text(content: Content) -> str:
    """Flatten a content value into plain text; list items join with newlines."""
    if isinstance(content, TextContent):
        return content.text
    if isinstance(content, ListContent):
        return '\n'.join(extract_text(item) for item in content.items)
    if isinstance(content, WrappedContent):
        return extract_text(content.inner)
    if isinstance(content, UnrecognizedContent):
        logger.debug("Ignoring unrecognized message content of type %s", type(content.raw).__name__)
    return ''


@dataclass(frozen=True)
class NormalizedMessage:
    role: str
    text: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: str = field(
        default_factory=lambda: datetime.datetime.now(datetime.timezone.utc)
        .isoformat(timespec='milliseconds').replace('+00:00', 'Z')
    )

    def to_upstream(self) -> Dict[str, Any]:
        """Upstream schema: the text is echoed into a single text part."""
        return {
            'id': self.id,
            'createdAt': self.created_at,
            'role': self.role,
            'content': self.text,
            'parts': [{'type': 'text', 'text': self.text}],
        }


def _message_text(message: Any) -> str:
    if not isinstance(message, dict):
        return extract_text(classify_content(message)).strip()

    text = extract_text(classify_content(message.get('content'))).strip()
    if not text:
        text = extract_text(classify_content(message.get('parts'))).strip()
    return text


def _output_role(role: Any) -> str:
    return 'assistant' if role == 'assistant' else 'user'


class MessageConverter:
    """Convert client messages into the upstream's required message list."""

    def __init__(self, placeholder_text: str = PLACEHOLDER_TEXT):
        self.placeholder_text = placeholder_text

    def normalize(self, raw_messages: Sequence[Any]) -> List[NormalizedMessage]:
        """Return a non-empty list of upstream messages.

        System turns are folded into the first user turn (or a new leading
        user turn), blank turns are dropped, and a placeholder is used when
        nothing survives.
        """
        output: List[NormalizedMessage] = []
        system_prompts: List[str] = []

        for message in raw_messages or []:
            text = _message_text(message)
            if not text:
                continue

            role = message.get('role') if isinstance(message, dict) else None
            if not isinstance(role, str):
                role = None
            if role in SYSTEM_ROLES:
                system_prompts.append(text)
            else:
                output.append(NormalizedMessage(_output_role(role), text))

        if system_prompts:
            instructions = f"{SYSTEM_INSTRUCTIONS_LABEL}\n" + '\n\n'.join(system_prompts)
            if output and output[0].role == 'user':
                output[0] = NormalizedMessage('user', f"{instructions}\n\n{output[0].text}")
            else:
                output.insert(0, NormalizedMessage('user', instructions))

        if not output:
            output.append(NormalizedMessage('user', self.placeholder_text))

        return output
