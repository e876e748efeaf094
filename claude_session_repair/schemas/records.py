"""
Typed view of one Claude Code session log line.

A session log is JSONL: every line is one self-describing JSON object. Message
lines look like

    {"type": "assistant", "uuid": "...", "message": {"role": "assistant", "content": [...]}}

and summary lines like

    {"type": "summary", "summary": "...", "leafUuid": "..."}

Older tooling also wrote flat message lines ({"role": "user", "content": [...]})
and envelope-less lines ({"message": {...}}); both are accepted.

Round-trip serialization:
- A Record keeps the original line in `raw` and serializes to it unchanged
- Edits go through with_blocks/with_text_content/with_summary/with_data, which
  rebuild the line from the data dict (compact separators, same as Claude Code)
- Content blocks are permissive models, so unknown keys survive a rebuild
"""

from __future__ import annotations

import json
from collections.abc import Mapping, Sequence
from typing import Annotated, Any, Literal

import attrs
import pydantic

from claude_session_repair.exceptions import ParseError
from claude_session_repair.schemas.types import PermissiveModel

__all__ = [
    'ContentBlock',
    'OpaqueBlock',
    'Record',
    'RecordKind',
    'TextBlock',
    'ToolResultBlock',
    'ToolUseBlock',
    'dump_block',
    'dump_json',
]

RecordKind = Literal['user_message', 'assistant_message', 'summary', 'other']


# ==============================================================================
# Content Blocks (Discriminated Union)
# ==============================================================================


class _Block(PermissiveModel):
    """Content block that remembers the dict it was validated from.

    dump_block starts from that dict, so key order and untouched values come
    back exactly as they were read.
    """

    _source: dict[str, Any] = pydantic.PrivateAttr(default_factory=dict)

    @pydantic.model_validator(mode='wrap')
    @classmethod
    def _keep_source(cls, value: Any, handler: pydantic.ModelWrapValidatorHandler[Any]) -> Any:
        block = handler(value)
        if isinstance(value, Mapping):
            block._source = dict(value)
        return block


class TextBlock(_Block):
    """Text content block from user or assistant messages."""

    type: Literal['text']
    text: str


class ToolUseBlock(_Block):
    """Tool invocation content block from assistant messages."""

    type: Literal['tool_use']
    id: str
    name: str | None = None
    input: Any = None


class ToolResultBlock(_Block):
    """Tool result content block from user messages.

    tool_use_id is a back-reference to the ToolUseBlock it answers.
    """

    type: Literal['tool_result']
    tool_use_id: str
    content: Any = None
    is_error: bool | None = None


class OpaqueBlock(_Block):
    """Any other block kind (thinking, image, document...), passed through untouched."""

    type: str


def _block_tag(value: Any) -> str:
    """Route known block types to their model, everything else to OpaqueBlock."""
    if isinstance(value, Mapping):
        block_type = value.get('type')
    else:
        block_type = getattr(value, 'type', None)
    if block_type in ('text', 'tool_use', 'tool_result'):
        return block_type
    return 'opaque'


ContentBlock = Annotated[
    Annotated[TextBlock, pydantic.Tag('text')]
    | Annotated[ToolUseBlock, pydantic.Tag('tool_use')]
    | Annotated[ToolResultBlock, pydantic.Tag('tool_result')]
    | Annotated[OpaqueBlock, pydantic.Tag('opaque')],
    pydantic.Discriminator(_block_tag),
]

_ContentListAdapter: pydantic.TypeAdapter[list[ContentBlock]] = pydantic.TypeAdapter(list[ContentBlock])


def dump_block(block: ContentBlock) -> dict[str, Any]:
    """Serialize a content block back to its JSON dict.

    Starts from the dict the block was read from and overwrites only the keys
    whose value changed, so the source key order survives an edit.
    """
    current = block.model_dump(mode='json', exclude_unset=True)
    current.update(block.get_extra_fields())
    data = dict(block._source)
    for key, value in current.items():
        if key not in data or data[key] != value:
            data[key] = value
    return data


def dump_json(data: Mapping[str, Any]) -> str:
    """Serialize a record dict the way Claude Code writes it (compact, UTF-8 kept)."""
    return json.dumps(data, separators=(',', ':'), ensure_ascii=False)


# ==============================================================================
# Record
# ==============================================================================


def _message_container(data: Mapping[str, Any]) -> Mapping[str, Any] | None:
    """Return the mapping holding role/content, or None for non-message records."""
    message = data.get('message')
    if isinstance(message, Mapping):
        return message
    if 'role' in data and 'content' in data:
        return data
    return None


def _derive_kind(data: Mapping[str, Any]) -> RecordKind:
    if data.get('type') == 'summary':
        return 'summary'
    container = _message_container(data)
    role = container.get('role') if container is not None else None
    if role == 'user':
        return 'user_message'
    if role == 'assistant':
        return 'assistant_message'
    return 'other'


@attrs.define(frozen=True)
class Record:
    """One parsed line of a session log.

    kind and blocks are derived from data; use the with_* methods to edit so
    the three can never drift apart.
    """

    raw: str
    data: Mapping[str, Any]
    kind: RecordKind
    blocks: tuple[ContentBlock, ...] = ()

    @classmethod
    def parse(cls, line: str) -> Record:
        """Parse one log line (without its newline).

        Raises:
            ParseError: If the line is not a JSON object or its content list is malformed
        """
        try:
            data = json.loads(line)
        except json.JSONDecodeError as e:
            raise ParseError(f'invalid JSON: {e}') from e
        if not isinstance(data, dict):
            raise ParseError(f'expected a JSON object, got {type(data).__name__}')
        return cls._build(line, data)

    @classmethod
    def from_data(cls, data: Mapping[str, Any]) -> Record:
        """Build a record from a dict, generating its serialized form."""
        return cls._build(dump_json(data), dict(data))

    @classmethod
    def _build(cls, raw: str, data: dict[str, Any]) -> Record:
        blocks: tuple[ContentBlock, ...] = ()
        container = _message_container(data)
        if container is not None and isinstance(container.get('content'), list):
            try:
                blocks = tuple(_ContentListAdapter.validate_python(container['content']))
            except pydantic.ValidationError as e:
                raise ParseError(f'malformed content blocks: {e.error_count()} validation errors') from e
        return cls(raw=raw, data=data, kind=_derive_kind(data), blocks=blocks)

    # --------------------------------------------------------------------------
    # Views
    # --------------------------------------------------------------------------

    @property
    def is_message(self) -> bool:
        return self.kind in ('user_message', 'assistant_message')

    @property
    def has_block_content(self) -> bool:
        """True when the message content is a list of blocks (possibly empty)."""
        container = _message_container(self.data)
        return container is not None and isinstance(container.get('content'), list)

    @property
    def text_content(self) -> str | None:
        """Message content when it is a plain string instead of a block list."""
        container = _message_container(self.data)
        if container is None:
            return None
        content = container.get('content')
        return content if isinstance(content, str) else None

    @property
    def summary(self) -> str | None:
        if self.kind != 'summary':
            return None
        summary = self.data.get('summary')
        return summary if isinstance(summary, str) else None

    @property
    def tool_use_ids(self) -> list[str]:
        return [b.id for b in self.blocks if isinstance(b, ToolUseBlock)]

    @property
    def tool_result_ids(self) -> list[str]:
        return [b.tool_use_id for b in self.blocks if isinstance(b, ToolResultBlock)]

    def serialize(self) -> str:
        return self.raw

    # --------------------------------------------------------------------------
    # Edits (always return a new Record)
    # --------------------------------------------------------------------------

    def with_data(self, data: Mapping[str, Any]) -> Record:
        return Record.from_data(data)

    def with_blocks(self, blocks: Sequence[ContentBlock]) -> Record:
        """Replace the message content list."""
        return self._with_content([dump_block(b) for b in blocks])

    def with_text_content(self, text: str) -> Record:
        """Replace string message content."""
        return self._with_content(text)

    def with_summary(self, summary: str) -> Record:
        data = dict(self.data)
        data['summary'] = summary
        return Record.from_data(data)

    def _with_content(self, content: list[dict[str, Any]] | str) -> Record:
        data = dict(self.data)
        message = data.get('message')
        if isinstance(message, Mapping):
            message = dict(message)
            message['content'] = content
            data['message'] = message
        elif 'role' in data and 'content' in data:
            data['content'] = content
        else:
            raise ValueError('record has no message content to replace')
        return Record.from_data(data)
