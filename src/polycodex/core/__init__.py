"""Core services for polycodex."""

from .approvals import ApplyPatchCommand, ApprovalPolicy, CommandConfirmation, ReviewDecision
from .cancellation import AbortedError, AbortSignal
from .config import DEFAULT_CONFIG_DIR, ConfigManager, ConfigurationError, PolycodexConfig
from .items import (
    ContentPart,
    ConversationItem,
    FunctionCallItem,
    FunctionCallOutputItem,
    MessageItem,
    ReasoningItem,
    system_message,
    text_message,
)
from .agent_loop import AgentLoop, AgentTerminatedError
from .exec import ExecResult, handle_exec_command

__all__ = [
    "AbortSignal",
    "AbortedError",
    "AgentLoop",
    "AgentTerminatedError",
    "ApplyPatchCommand",
    "ApprovalPolicy",
    "CommandConfirmation",
    "ConfigManager",
    "ConfigurationError",
    "ContentPart",
    "ConversationItem",
    "DEFAULT_CONFIG_DIR",
    "ExecResult",
    "FunctionCallItem",
    "FunctionCallOutputItem",
    "MessageItem",
    "PolycodexConfig",
    "ReasoningItem",
    "ReviewDecision",
    "handle_exec_command",
    "system_message",
    "text_message",
]
