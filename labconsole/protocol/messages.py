from __future__ import annotations

from enum import Enum
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, Field


class MessageType(str, Enum):
    EVAL_COMMAND = "eval_command"
    RUN_SCRIPT = "run_script"
    STOP_LOOP = "stop_loop"
    CLEAR_WORKSPACE = "clear_workspace"
    SHUTDOWN = "shutdown"
    READY = "ready"
    STATUS = "status"
    STATE = "state"
    RESULT = "result"
    ERROR = "error"
    STATS = "stats"
    WORKSPACE = "workspace"
    OUTPUT = "output"


class StreamType(str, Enum):
    STDOUT = "stdout"
    STDERR = "stderr"


class BaseMessage(BaseModel):
    # Type field will be defined by subclasses with specific Literal values
    id: str = Field(description="Unique message identifier")
    timestamp: float = Field(description="Unix timestamp of message creation")


# Inbound commands


class EvalCommandMessage(BaseMessage):
    type: Literal[MessageType.EVAL_COMMAND] = Field(default=MessageType.EVAL_COMMAND)
    code: str = Field(description="Source text to evaluate")
    show_output: bool = Field(default=True, description="Whether to display the result")
    session_name: Optional[str] = Field(
        default=None, description="Source name reported in diagnostics"
    )


class RunScriptMessage(BaseMessage):
    type: Literal[MessageType.RUN_SCRIPT] = Field(default=MessageType.RUN_SCRIPT)
    path: str = Field(description="Path of the script to run")
    lines: Optional[list[int]] = Field(
        default=None, description="Single line [n] or inclusive range [start, end]"
    )
    silent: bool = Field(default=False, description="Suppress result display")


class StopLoopMessage(BaseMessage):
    type: Literal[MessageType.STOP_LOOP] = Field(default=MessageType.STOP_LOOP)
    flag: bool = Field(default=True, description="True to stop, False to clear a pending stop")


class ClearWorkspaceMessage(BaseMessage):
    type: Literal[MessageType.CLEAR_WORKSPACE] = Field(default=MessageType.CLEAR_WORKSPACE)


class ShutdownMessage(BaseMessage):
    type: Literal[MessageType.SHUTDOWN] = Field(default=MessageType.SHUTDOWN)
    reason: str = Field(default="requested", description="Shutdown reason")


# Outbound events


class ReadyMessage(BaseMessage):
    type: Literal[MessageType.READY] = Field(default=MessageType.READY)
    session_id: str = Field(description="Session identifier")
    capabilities: list[str] = Field(
        default_factory=list, description="Names in the capability table"
    )


class StatusMessage(BaseMessage):
    type: Literal[MessageType.STATUS] = Field(default=MessageType.STATUS)
    command_id: str = Field(description="ID of the command this status answers")
    status: str = Field(description="accepted, busy or invalid")


class StateMessage(BaseMessage):
    type: Literal[MessageType.STATE] = Field(default=MessageType.STATE)
    state: str = Field(description="evaluating, completed, failed or stopped")
    script: Optional[str] = Field(default=None, description="Script being evaluated")


class ResultMessage(BaseMessage):
    type: Literal[MessageType.RESULT] = Field(default=MessageType.RESULT)
    value: Any = Field(default=None, description="Result value when JSON-serializable")
    repr: str = Field(description="String representation of the result")
    is_large_structure: bool = Field(default=False, description="Result exceeds display threshold")


class ErrorMessage(BaseMessage):
    type: Literal[MessageType.ERROR] = Field(default=MessageType.ERROR)
    message: str = Field(description="Rendered, user-facing error text")
    exception_type: str = Field(description="Exception class name")
    line: Optional[int] = Field(default=None, description="Line in the submitted source")
    column: Optional[int] = Field(default=None, description="Column in the submitted source")
    script: Optional[str] = Field(default=None, description="Script the error belongs to")
    traceback: Optional[str] = Field(default=None, description="Raw traceback (debug only)")


class StatsMessage(BaseMessage):
    type: Literal[MessageType.STATS] = Field(default=MessageType.STATS)
    stats: dict[str, int] = Field(description="Outstanding resources per kind")


class WorkspaceEntryModel(BaseModel):
    name: str
    kind: str
    type: str


class WorkspaceMessage(BaseMessage):
    type: Literal[MessageType.WORKSPACE] = Field(default=MessageType.WORKSPACE)
    entries: list[WorkspaceEntryModel] = Field(
        default_factory=list, description="User names in definition order"
    )


class OutputMessage(BaseMessage):
    type: Literal[MessageType.OUTPUT] = Field(default=MessageType.OUTPUT)
    data: str = Field(description="Output data")
    stream: StreamType = Field(description="Output stream type")


Message = Union[
    EvalCommandMessage,
    RunScriptMessage,
    StopLoopMessage,
    ClearWorkspaceMessage,
    ShutdownMessage,
    ReadyMessage,
    StatusMessage,
    StateMessage,
    ResultMessage,
    ErrorMessage,
    StatsMessage,
    WorkspaceMessage,
    OutputMessage,
]


def parse_message(data: dict[str, Any]) -> Message:
    """Parse a message from a dictionary.

    Args:
        data: Dictionary containing message data

    Returns:
        Parsed message object

    Raises:
        ValueError: If message type is unknown or data is invalid
    """
    message_type = data.get("type")
    if message_type is None:
        raise ValueError("Message type is missing")

    message_classes: dict[str, type[Message]] = {
        MessageType.EVAL_COMMAND.value: EvalCommandMessage,
        MessageType.RUN_SCRIPT.value: RunScriptMessage,
        MessageType.STOP_LOOP.value: StopLoopMessage,
        MessageType.CLEAR_WORKSPACE.value: ClearWorkspaceMessage,
        MessageType.SHUTDOWN.value: ShutdownMessage,
        MessageType.READY.value: ReadyMessage,
        MessageType.STATUS.value: StatusMessage,
        MessageType.STATE.value: StateMessage,
        MessageType.RESULT.value: ResultMessage,
        MessageType.ERROR.value: ErrorMessage,
        MessageType.STATS.value: StatsMessage,
        MessageType.WORKSPACE.value: WorkspaceMessage,
        MessageType.OUTPUT.value: OutputMessage,
    }

    message_class = message_classes.get(message_type)
    if not message_class:
        raise ValueError(f"Unknown message type: {message_type}")

    return message_class(**data)
