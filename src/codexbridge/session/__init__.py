"""Session data: wire models, conversation state and event fan-out.

``SessionRegistry`` lives in :mod:`codexbridge.session.registry`; it is
not re-exported here because it depends on the bridge, which in turn
depends on these models.
"""

from codexbridge.session.channel import ChannelMessage, EventChannel, Subscription
from codexbridge.session.models import (
    AgentMessageItem,
    CommandExecutionItem,
    DeviceLogin,
    ErrorItem,
    ExitInfo,
    FileChangeItem,
    LoginResult,
    McpToolCallItem,
    ReasoningItem,
    SessionStatus,
    Thread,
    ThreadItem,
    ThreadPage,
    TodoListItem,
    Turn,
    UnknownItem,
    UserMessageItem,
    WebSearchItem,
)
from codexbridge.session.state import SessionState

__all__ = [
    "AgentMessageItem",
    "ChannelMessage",
    "CommandExecutionItem",
    "DeviceLogin",
    "ErrorItem",
    "EventChannel",
    "ExitInfo",
    "FileChangeItem",
    "LoginResult",
    "McpToolCallItem",
    "ReasoningItem",
    "SessionState",
    "SessionStatus",
    "Subscription",
    "Thread",
    "ThreadItem",
    "ThreadPage",
    "TodoListItem",
    "Turn",
    "UnknownItem",
    "UserMessageItem",
    "WebSearchItem",
]
