"""Pydantic v2 models for app-server threads, turns and items."""

from __future__ import annotations

from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Discriminator, Field, Tag, TypeAdapter
from pydantic.alias_generators import to_camel

SessionStatus = Literal["pending", "ready", "error"]

TurnStatus = Literal["inProgress", "completed", "interrupted", "failed"]


class _WireModel(BaseModel):
    """camelCase on the wire, snake_case in Python; unknown keys are kept."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )

    def to_wire(self) -> dict[str, Any]:
        """Dump with wire names, omitting unset optionals."""
        return self.model_dump(by_alias=True, exclude_none=True)


# ---------------------------------------------------------------------- #
# Threads and turns
# ---------------------------------------------------------------------- #


class Thread(_WireModel):
    """A persistent conversation held by the agent."""

    id: str = Field(description="Thread identifier")
    preview: str = Field(default="", description="Short preview of the first message")
    model_provider: str = Field(default="", description="Provider serving the thread")
    created_at: float | None = Field(default=None, description="Creation timestamp")


class TurnError(_WireModel):
    message: str
    codex_error_info: Any = None
    additional_details: str | None = None


class Turn(_WireModel):
    """One request/response cycle of agent work within a thread."""

    id: str = Field(description="Turn identifier")
    status: TurnStatus = Field(default="inProgress", description="Turn lifecycle state")
    items: list[ThreadItem] = Field(default_factory=list)
    error: TurnError | None = None


class ThreadPage(_WireModel):
    """One page of ``thread/list`` results."""

    data: list[Thread] = Field(default_factory=list)
    next_cursor: str | None = None


# ---------------------------------------------------------------------- #
# Thread items
# ---------------------------------------------------------------------- #


class _ItemBase(_WireModel):
    id: str = Field(description="Item identifier, unique within a thread")


class UserMessageItem(_ItemBase):
    type: Literal["userMessage"] = "userMessage"
    content: list[dict[str, Any]] = Field(default_factory=list)


class AgentMessageItem(_ItemBase):
    type: Literal["agentMessage"] = "agentMessage"
    text: str = ""


class ReasoningItem(_ItemBase):
    type: Literal["reasoning"] = "reasoning"
    summary: str | list[str] | None = None
    content: str | list[str] | None = None


class CommandExecutionItem(_ItemBase):
    type: Literal["commandExecution"] = "commandExecution"
    command: str | list[str] = ""
    cwd: str | None = None
    status: str = "inProgress"
    aggregated_output: str | None = None
    exit_code: int | None = None
    duration_ms: int | None = None


class FileChange(_WireModel):
    path: str
    kind: Any = None
    diff: str | None = None


class FileChangeItem(_ItemBase):
    type: Literal["fileChange"] = "fileChange"
    changes: list[FileChange] = Field(default_factory=list)
    status: str = "inProgress"


class McpToolCallItem(_ItemBase):
    type: Literal["mcpToolCall"] = "mcpToolCall"
    server: str = ""
    tool: str = ""
    status: str = "inProgress"
    arguments: Any = None
    result: Any = None
    error: dict[str, Any] | None = None


class WebSearchItem(_ItemBase):
    type: Literal["webSearch"] = "webSearch"
    query: str = ""


class TodoEntry(_WireModel):
    text: str
    completed: bool = False


class TodoListItem(_ItemBase):
    type: Literal["todoList"] = "todoList"
    items: list[TodoEntry] = Field(default_factory=list)


class ErrorItem(_ItemBase):
    type: Literal["error"] = "error"
    message: str = ""


class UnknownItem(_ItemBase):
    """Item kinds this bridge does not model; stored as received."""

    type: str


_KNOWN_ITEM_TYPES = frozenset(
    {
        "userMessage",
        "agentMessage",
        "reasoning",
        "commandExecution",
        "fileChange",
        "mcpToolCall",
        "webSearch",
        "todoList",
        "error",
    }
)


def _item_discriminator(v: Any) -> str:
    """Known kinds dispatch on ``type``; everything else is ``unknown``."""
    if isinstance(v, UnknownItem):
        return "unknown"
    raw = v.get("type") if isinstance(v, dict) else getattr(v, "type", None)
    return raw if raw in _KNOWN_ITEM_TYPES else "unknown"


ThreadItem = Annotated[
    Annotated[UserMessageItem, Tag("userMessage")]
    | Annotated[AgentMessageItem, Tag("agentMessage")]
    | Annotated[ReasoningItem, Tag("reasoning")]
    | Annotated[CommandExecutionItem, Tag("commandExecution")]
    | Annotated[FileChangeItem, Tag("fileChange")]
    | Annotated[McpToolCallItem, Tag("mcpToolCall")]
    | Annotated[WebSearchItem, Tag("webSearch")]
    | Annotated[TodoListItem, Tag("todoList")]
    | Annotated[ErrorItem, Tag("error")]
    | Annotated[UnknownItem, Tag("unknown")],
    Discriminator(_item_discriminator),
]
"""Discriminated union of all thread item kinds."""

thread_item_adapter: TypeAdapter[ThreadItem] = TypeAdapter(ThreadItem)

Turn.model_rebuild()


# ---------------------------------------------------------------------- #
# Bridge-level results
# ---------------------------------------------------------------------- #


class ExitInfo(BaseModel):
    """How the agent subprocess ended."""

    model_config = ConfigDict(frozen=True)

    code: int | None = Field(default=None, description="Exit status, None if signalled")
    signal: str | None = Field(default=None, description="Terminating signal name")


class LoginResult(BaseModel):
    success: bool
    error: str | None = None


class DeviceLogin(_WireModel):
    """Device-code login challenge shown to the user."""

    user_code: str = ""
    verification_uri: str = ""
    expires_in: int = 0

    @classmethod
    def from_result(cls, result: dict[str, Any] | None) -> DeviceLogin:
        """Accept either camelCase or snake_case keys from the server."""
        data = result or {}
        return cls(
            user_code=str(data.get("userCode") or data.get("user_code") or ""),
            verification_uri=str(
                data.get("verificationUri") or data.get("verification_uri") or ""
            ),
            expires_in=int(data.get("expiresIn") or data.get("expires_in") or 0),
        )
