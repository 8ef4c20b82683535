"""Tool that lets the model ask the user a question through the host UI."""

from __future__ import annotations

import time
import uuid
from typing import Any, Awaitable, Callable, Optional

from parley.ai.tools.base import Tool
from parley.log import get_logger

logger = get_logger(__name__)

QuestionCallback = Callable[[dict[str, Any]], Awaitable[Optional[dict[str, Any]]]]

_OPTION_TYPES = ("multipleChoice", "radio", "mixed")


class QuestionTool(Tool):
    """``ask_question``: block on the user's answer and hand it back to the model.

    The callback receives a question request dict and returns a response dict
    (``{"type": ..., "text": ..., "selected": [...]}``) or ``None`` when the
    user dismissed the prompt.
    """

    def __init__(self, callback: QuestionCallback):
        self._callback = callback

    @property
    def name(self) -> str:
        return "ask_question"

    @property
    def description(self) -> str:
        return (
            "Ask the user a question and wait for the answer. Use it when you need "
            "a decision or missing information. Supports free text, multiple choice, "
            "single choice (radio) and mixed questions."
        )

    @property
    def input_schema(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "type": {
                    "type": "string",
                    "enum": ["text", "multipleChoice", "radio", "mixed"],
                    "description": "Kind of question",
                },
                "question": {"type": "string", "description": "The question to ask"},
                "context": {"type": "string", "description": "Optional background shown with the question"},
                "options": {
                    "type": "array",
                    "items": {"type": "string"},
                    "description": "Choices for multipleChoice, radio and mixed questions",
                },
                "allowMultiple": {"type": "boolean", "description": "Allow selecting several options"},
                "placeholder": {"type": "string", "description": "Placeholder for the text input"},
                "defaultValue": {"type": "string", "description": "Pre-filled text answer"},
                "defaultSelected": {
                    "type": "array",
                    "items": {"type": "string"},
                    "description": "Options selected by default",
                },
                "required": {"type": "boolean", "description": "Whether an answer is required (default true)"},
            },
            "required": ["type", "question"],
        }

    def build_request(self, args: dict[str, Any]) -> dict[str, Any]:
        qtype = args.get("type", "text")
        request: dict[str, Any] = {
            "id": f"q_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}",
            "type": qtype,
            "question": args.get("question", ""),
            "context": args.get("context"),
            "required": args.get("required") is not False,
        }
        if qtype == "text":
            request["placeholder"] = args.get("placeholder")
            request["defaultValue"] = args.get("defaultValue")
            request["multiline"] = bool(args.get("multiline", False))
        elif qtype in _OPTION_TYPES:
            request["options"] = list(args.get("options") or [])
            selected = args.get("defaultSelected")
            if qtype == "radio":
                request["defaultSelected"] = selected[0] if selected else None
            else:
                request["allowMultiple"] = bool(args.get("allowMultiple", False))
                request["defaultSelected"] = selected
            if qtype == "mixed":
                request["textPlaceholder"] = args.get("placeholder")
                request["textLabel"] = args.get("textLabel")
        return request

    @staticmethod
    def format_response(response: dict[str, Any]) -> str:
        rtype = response.get("type")
        selected = response.get("selected") or []
        if rtype == "text":
            return str(response.get("text", ""))
        if rtype in ("multipleChoice", "radio"):
            return ", ".join(selected)
        if rtype == "mixed":
            parts = []
            if selected:
                parts.append(f"Selected: {', '.join(selected)}")
            if response.get("text"):
                parts.append(f"Additional input: {response['text']}")
            return "; ".join(parts)
        return str(response)

    async def execute(self, args: dict[str, Any]) -> Any:
        qtype = args.get("type", "text")
        if qtype in _OPTION_TYPES and not args.get("options"):
            return {"success": False, "error": f"{qtype} type requires options array"}

        request = self.build_request(args)
        logger.info("question_asked", question_id=request["id"], type=qtype)
        try:
            response = await self._callback(request)
        except Exception as e:
            logger.error("question_callback_error", error=str(e))
            return {"success": False, "error": str(e)}

        if not response:
            return {"success": False, "cancelled": True, "message": "User cancelled the question"}

        return {
            "success": True,
            "question": request["question"],
            "response": self.format_response(response),
            "responseData": response,
        }
