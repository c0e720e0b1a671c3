"""Conversation items exchanged between the agent loop, providers and the UI."""

from __future__ import annotations

import json
import uuid
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any, Literal

Role = Literal["user", "assistant", "system"]

TEXT_PART_TYPES: frozenset[str] = frozenset({"input_text", "output_text", "text"})


def new_item_id(prefix: str = "item") -> str:
    return f"{prefix}_{uuid.uuid4().hex}"


@dataclass(slots=True)
class ContentPart:
    """One ordered piece of a message: text or an image reference."""

    type: str
    text: str | None = None
    image_url: str | None = None

    def as_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"type": self.type}
        if self.text is not None:
            data["text"] = self.text
        if self.image_url is not None:
            data["image_url"] = self.image_url
        return data


@dataclass(slots=True)
class MessageItem:
    role: str
    content: list[ContentPart]
    id: str = field(default_factory=lambda: new_item_id("msg"))
    type: Literal["message"] = "message"

    @property
    def text(self) -> str:
        return "".join(part.text or "" for part in self.content if part.type in TEXT_PART_TYPES)

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "role": self.role,
            "content": [part.as_dict() for part in self.content],
        }


@dataclass(slots=True)
class FunctionCallItem:
    name: str
    arguments: str
    call_id: str
    id: str = field(default_factory=lambda: new_item_id("fc"))
    type: Literal["function_call"] = "function_call"

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "name": self.name,
            "arguments": self.arguments,
            "call_id": self.call_id,
        }


@dataclass(slots=True)
class FunctionCallOutputItem:
    call_id: str
    output: str
    id: str = field(default_factory=lambda: new_item_id("fco"))
    type: Literal["function_call_output"] = "function_call_output"

    def parsed_output(self) -> dict[str, Any]:
        """Decode the `{"output": ..., "metadata": ...}` payload, tolerating plain text."""

        try:
            data = json.loads(self.output)
        except json.JSONDecodeError:
            return {"output": self.output, "metadata": {}}
        if not isinstance(data, dict):
            return {"output": self.output, "metadata": {}}
        return data

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "call_id": self.call_id,
            "output": self.output,
        }


@dataclass(slots=True)
class ReasoningItem:
    summary: list[str] = field(default_factory=list)
    id: str = field(default_factory=lambda: new_item_id("rs"))
    duration_ms: int | None = None
    type: Literal["reasoning"] = "reasoning"

    def as_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "type": self.type,
            "summary": [{"type": "summary_text", "text": text} for text in self.summary],
        }
        if self.duration_ms is not None:
            data["duration_ms"] = self.duration_ms
        return data


ConversationItem = MessageItem | FunctionCallItem | FunctionCallOutputItem | ReasoningItem


def text_message(role: str, text: str, *, item_id: str | None = None) -> MessageItem:
    part_type = "output_text" if role == "assistant" else "input_text"
    message = MessageItem(role=role, content=[ContentPart(type=part_type, text=text)])
    if item_id:
        message.id = item_id
    return message


def system_message(text: str) -> MessageItem:
    return text_message("system", text, item_id=new_item_id("error"))


def function_call_output(call_id: str, output: str, metadata: Mapping[str, Any]) -> FunctionCallOutputItem:
    payload = json.dumps({"output": output, "metadata": dict(metadata)})
    return FunctionCallOutputItem(call_id=call_id, output=payload)


def _parse_content(raw: object) -> list[ContentPart]:
    if isinstance(raw, str):
        return [ContentPart(type="input_text", text=raw)]
    parts: list[ContentPart] = []
    if not isinstance(raw, Iterable):
        return parts
    for entry in raw:
        if isinstance(entry, str):
            parts.append(ContentPart(type="input_text", text=entry))
            continue
        if not isinstance(entry, Mapping):
            continue
        part_type = str(entry.get("type") or "input_text")
        text = entry.get("text")
        image_url = entry.get("image_url")
        parts.append(
            ContentPart(
                type=part_type,
                text=text if isinstance(text, str) else None,
                image_url=image_url if isinstance(image_url, str) else None,
            )
        )
    return parts


def item_from_dict(data: Mapping[str, Any]) -> ConversationItem:
    """Build a conversation item from its wire representation.

    Accepts both the responses-style function call shape (`name`,
    `arguments`, `call_id`) and the chat-style shape that nests the details
    under `function` and only carries an `id`.
    """

    item_type = data.get("type")
    item_id = data.get("id")

    if item_type == "message" or (item_type is None and "role" in data):
        message = MessageItem(role=str(data.get("role", "user")), content=_parse_content(data.get("content")))
        if isinstance(item_id, str) and item_id:
            message.id = item_id
        return message

    if item_type == "function_call" or isinstance(data.get("function"), Mapping):
        function = data.get("function")
        if isinstance(function, Mapping):
            name = function.get("name")
            arguments = function.get("arguments")
        else:
            name = data.get("name")
            arguments = data.get("arguments")
        if isinstance(arguments, Mapping):
            arguments = json.dumps(arguments)
        call_id = data.get("call_id") or item_id
        if not isinstance(call_id, str) or not call_id:
            raise ValueError("function_call item is missing a call id")
        call = FunctionCallItem(name=str(name or ""), arguments=str(arguments or "{}"), call_id=call_id)
        if isinstance(item_id, str) and item_id:
            call.id = item_id
        return call

    if item_type == "function_call_output":
        output = data.get("output")
        if not isinstance(output, str):
            output = json.dumps(output)
        result = FunctionCallOutputItem(call_id=str(data.get("call_id", "")), output=output)
        if isinstance(item_id, str) and item_id:
            result.id = item_id
        return result

    if item_type == "reasoning":
        summary: list[str] = []
        for entry in data.get("summary") or []:
            if isinstance(entry, Mapping) and isinstance(entry.get("text"), str):
                summary.append(entry["text"])
            elif isinstance(entry, str):
                summary.append(entry)
        reasoning = ReasoningItem(summary=summary)
        if isinstance(item_id, str) and item_id:
            reasoning.id = item_id
        return reasoning

    raise ValueError(f"Unsupported conversation item type: {item_type!r}")


def item_text(item: ConversationItem) -> str:
    if isinstance(item, MessageItem):
        return item.text
    if isinstance(item, FunctionCallOutputItem):
        return str(item.parsed_output().get("output", ""))
    if isinstance(item, ReasoningItem):
        return "\n".join(item.summary)
    return item.arguments


__all__ = [
    "ContentPart",
    "ConversationItem",
    "FunctionCallItem",
    "FunctionCallOutputItem",
    "MessageItem",
    "ReasoningItem",
    "Role",
    "function_call_output",
    "item_from_dict",
    "item_text",
    "new_item_id",
    "system_message",
    "text_message",
]
