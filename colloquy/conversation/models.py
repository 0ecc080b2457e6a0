"""Pydantic models for turns and content blocks.

Blocks are a tagged union discriminated on ``type``. Binary payloads
(images, documents) travel as base64 when serialized to JSON, which is
also how the SQL store persists them.
"""

from __future__ import annotations

from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, JsonValue

Role = Literal["user", "assistant"]
ToolStatus = Literal["success", "error"]

_BLOCK_CONFIG = ConfigDict(frozen=True, ser_json_bytes="base64", val_json_bytes="base64")


class TextBlock(BaseModel):
    model_config = _BLOCK_CONFIG

    type: Literal["text"] = "text"
    text: str


class ReasoningBlock(BaseModel):
    """Extended-thinking output. The signature is required to send it back."""

    model_config = _BLOCK_CONFIG

    type: Literal["reasoning"] = "reasoning"
    text: str
    signature: str | None = None


class ImageBlock(BaseModel):
    model_config = _BLOCK_CONFIG

    type: Literal["image"] = "image"
    format: str  # png, jpeg, gif, webp
    data: bytes


class DocumentBlock(BaseModel):
    model_config = _BLOCK_CONFIG

    type: Literal["document"] = "document"
    format: str  # pdf, txt, md, csv, html ...
    data: bytes
    name: str


class ToolInvocationBlock(BaseModel):
    """A tool call emitted by the model. Only legal inside an assistant turn."""

    model_config = _BLOCK_CONFIG

    type: Literal["tool_invocation"] = "tool_invocation"
    id: str
    name: str
    input: JsonValue = Field(default_factory=dict)


class ToolResultBlock(BaseModel):
    """Result of a tool call. Only legal inside a user turn, after its invocation."""

    model_config = _BLOCK_CONFIG

    type: Literal["tool_result"] = "tool_result"
    id: str
    result: str
    status: ToolStatus = "success"


ContentBlock = Annotated[
    Union[
        TextBlock,
        ReasoningBlock,
        ImageBlock,
        DocumentBlock,
        ToolInvocationBlock,
        ToolResultBlock,
    ],
    Field(discriminator="type"),
]


class Turn(BaseModel):
    """One message of the conversation: a role and its ordered blocks."""

    model_config = ConfigDict(frozen=True)

    role: Role
    content: tuple[ContentBlock, ...] = ()

    def text(self) -> str:
        """Concatenate text blocks in order, no separator."""
        return "".join(b.text for b in self.content if isinstance(b, TextBlock))

    @property
    def is_empty(self) -> bool:
        return not self.content

    @property
    def has_tool_blocks(self) -> bool:
        return any(isinstance(b, (ToolInvocationBlock, ToolResultBlock)) for b in self.content)

    @property
    def invocations(self) -> list[ToolInvocationBlock]:
        return [b for b in self.content if isinstance(b, ToolInvocationBlock)]

    @property
    def results(self) -> list[ToolResultBlock]:
        return [b for b in self.content if isinstance(b, ToolResultBlock)]

    @property
    def invocation_ids(self) -> list[str]:
        return [b.id for b in self.invocations]

    @property
    def result_ids(self) -> list[str]:
        return [b.id for b in self.results]

    def with_content(self, blocks: list[ContentBlock] | tuple[ContentBlock, ...]) -> Turn:
        return Turn(role=self.role, content=tuple(blocks))


def user_turn(text: str) -> Turn:
    return Turn(role="user", content=(TextBlock(text=text),))


def assistant_turn(text: str) -> Turn:
    return Turn(role="assistant", content=(TextBlock(text=text),))
