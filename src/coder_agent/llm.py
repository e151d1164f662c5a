"""Agent model boundary: typed model events and conversation sessions.

The engine treats the model as a black box: a session keeps the conversation
history and turns a list of parts into a lazy stream of events. Two models
ship with the service:
- EchoAgentModel: deterministic, no network; useful for local runs and tests.
- OpenAIChatModel: chat completions REST API with function tools.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import time
from collections.abc import AsyncIterator
from typing import Annotated, Any, Literal, Protocol
from urllib import error, request

from pydantic import BaseModel, Field

from coder_agent.cancellation import CancellationToken
from coder_agent.config.settings import Settings
from coder_agent.models import AgentSettings, ToolCallRequest, new_id

logger = logging.getLogger(__name__)


class ToolResponse(BaseModel):
    call_id: str
    name: str
    response: dict[str, Any] = Field(default_factory=dict)


class ModelPart(BaseModel):
    """One part of a model-facing turn; exactly one field is set."""

    text: str | None = None
    function_call: ToolCallRequest | None = None
    function_response: ToolResponse | None = None


class ModelContent(BaseModel):
    role: Literal["user", "model"]
    parts: list[ModelPart] = Field(default_factory=list)


class ContentEvent(BaseModel):
    kind: Literal["content"] = "content"
    text: str


class ThoughtEvent(BaseModel):
    kind: Literal["thought"] = "thought"
    subject: str
    description: str = ""


class ToolCallRequestEvent(BaseModel):
    kind: Literal["tool-call-request"] = "tool-call-request"
    request: ToolCallRequest


class ModelErrorEvent(BaseModel):
    kind: Literal["error"] = "error"
    message: str


class FinishedEvent(BaseModel):
    kind: Literal["finished"] = "finished"
    reason: str = "stop"


ModelEvent = Annotated[
    ContentEvent | ThoughtEvent | ToolCallRequestEvent | ModelErrorEvent | FinishedEvent,
    Field(discriminator="kind"),
]


class ModelSession(Protocol):
    def get_history(self) -> list[ModelContent]: ...

    def add_history(self, content: ModelContent) -> None: ...

    def send_message_stream(
        self, parts: list[ModelPart], token: CancellationToken
    ) -> AsyncIterator[ModelEvent]: ...


class AgentModel(Protocol):
    def start_session(
        self,
        *,
        task_id: str,
        agent_settings: AgentSettings,
        tools: list[dict[str, Any]],
    ) -> ModelSession: ...


class ConversationSession:
    """History bookkeeping shared by the shipped sessions."""

    def __init__(
        self,
        *,
        task_id: str,
        agent_settings: AgentSettings,
        tools: list[dict[str, Any]],
    ) -> None:
        self.task_id = task_id
        self.agent_settings = agent_settings
        self.tools = tools
        self._history: list[ModelContent] = []

    def get_history(self) -> list[ModelContent]:
        return list(self._history)

    def add_history(self, content: ModelContent) -> None:
        self._history.append(content)


_TOOL_COMMAND = re.compile(r"^/(?P<name>[a-z_][a-z0-9_]*)\s*(?P<args>\{.*\})?\s*$", re.DOTALL)


class EchoSession(ConversationSession):
    """Echo user text back; `/tool_name {json}` requests a tool call."""

    async def send_message_stream(
        self, parts: list[ModelPart], token: CancellationToken
    ) -> AsyncIterator[ModelEvent]:
        self.add_history(ModelContent(role="user", parts=parts))
        known_tools = {tool["name"] for tool in self.tools}
        reply: list[ModelPart] = []
        for part in parts:
            token.raise_if_cancelled()
            if part.function_response is not None:
                text = _summarize_tool_response(part.function_response)
                reply.append(ModelPart(text=text))
                yield ContentEvent(text=text)
            elif part.text:
                tool_request = _parse_tool_command(part.text, known_tools)
                if tool_request is not None:
                    reply.append(ModelPart(function_call=tool_request))
                    yield ToolCallRequestEvent(request=tool_request)
                else:
                    text = f"Echo: {part.text}"
                    reply.append(ModelPart(text=text))
                    yield ContentEvent(text=text)
            # Yield control so cancellation and other tasks can interleave.
            await asyncio.sleep(0)
        self.add_history(ModelContent(role="model", parts=reply))
        yield FinishedEvent()


class EchoAgentModel:
    def start_session(
        self,
        *,
        task_id: str,
        agent_settings: AgentSettings,
        tools: list[dict[str, Any]],
    ) -> EchoSession:
        return EchoSession(task_id=task_id, agent_settings=agent_settings, tools=tools)


def _parse_tool_command(text: str, known_tools: set[str]) -> ToolCallRequest | None:
    match = _TOOL_COMMAND.match(text.strip())
    if match is None or match.group("name") not in known_tools:
        return None
    raw_args = match.group("args")
    try:
        args = json.loads(raw_args) if raw_args else {}
    except json.JSONDecodeError:
        return None
    if not isinstance(args, dict):
        return None
    return ToolCallRequest(name=match.group("name"), args=args)


def _summarize_tool_response(response: ToolResponse) -> str:
    status = response.response.get("status", "unknown")
    if status == "success":
        return f"Tool {response.name} finished successfully."
    detail = response.response.get("error") or status
    return f"Tool {response.name} did not succeed: {detail}"


SYSTEM_PROMPT = (
    "You are a coding agent working inside a project workspace. "
    "Use the provided tools to inspect and change files, explain what you do, "
    "and stop calling tools once the request is handled."
)


class OpenAISession(ConversationSession):
    def __init__(
        self,
        *,
        task_id: str,
        agent_settings: AgentSettings,
        tools: list[dict[str, Any]],
        client: OpenAIChatModel,
    ) -> None:
        super().__init__(task_id=task_id, agent_settings=agent_settings, tools=tools)
        self._client = client

    async def send_message_stream(
        self, parts: list[ModelPart], token: CancellationToken
    ) -> AsyncIterator[ModelEvent]:
        self.add_history(ModelContent(role="user", parts=parts))
        payload = self._client.build_payload(
            history=self.get_history(),
            tools=self.tools,
            model=self.agent_settings.model,
        )
        response_json = await token.guard(
            asyncio.to_thread(self._client.request_with_retry, payload)
        )
        try:
            reply = self._client.parse_reply(response_json)
        except ValueError as exc:
            yield ModelErrorEvent(message=str(exc))
            return

        self.add_history(reply)
        for part in reply.parts:
            token.raise_if_cancelled()
            if part.text:
                yield ContentEvent(text=part.text)
            elif part.function_call is not None:
                yield ToolCallRequestEvent(request=part.function_call)
        yield FinishedEvent()


class OpenAIChatModel:
    """Small OpenAI adapter using the chat completions REST API."""

    def __init__(
        self,
        *,
        api_key: str,
        model: str = "gpt-4o-mini",
        base_url: str = "https://api.openai.com/v1",
        timeout_s: float = 60.0,
        max_retries: int = 1,
        backoff_s: float = 0.2,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s
        self.max_retries = max(0, max_retries)
        self.backoff_s = max(0.0, backoff_s)

    def start_session(
        self,
        *,
        task_id: str,
        agent_settings: AgentSettings,
        tools: list[dict[str, Any]],
    ) -> OpenAISession:
        return OpenAISession(
            task_id=task_id, agent_settings=agent_settings, tools=tools, client=self
        )

    def build_payload(
        self,
        *,
        history: list[ModelContent],
        tools: list[dict[str, Any]],
        model: str | None = None,
    ) -> dict[str, Any]:
        messages: list[dict[str, Any]] = [{"role": "system", "content": SYSTEM_PROMPT}]
        for content in history:
            messages.extend(_to_chat_messages(content))
        payload: dict[str, Any] = {"model": model or self.model, "messages": messages}
        if tools:
            payload["tools"] = [{"type": "function", "function": tool} for tool in tools]
        return payload

    def request_with_retry(self, payload: dict[str, Any]) -> dict[str, Any]:
        last_error: Exception | None = None
        for attempt in range(self.max_retries + 1):
            try:
                return self._request(payload)
            except (TimeoutError, ValueError, error.URLError, error.HTTPError) as exc:
                last_error = exc
                logger.warning(
                    "OpenAI request failed attempt=%d/%d model=%s reason=%s",
                    attempt + 1,
                    self.max_retries + 1,
                    payload.get("model"),
                    exc,
                )
                if attempt < self.max_retries and self.backoff_s > 0:
                    time.sleep(self.backoff_s)
        if last_error is None:
            raise RuntimeError("LLM request failed with unknown error")
        raise last_error

    def _request(self, payload: dict[str, Any]) -> dict[str, Any]:
        req = request.Request(
            url=f"{self.base_url}/chat/completions",
            data=json.dumps(payload).encode("utf-8"),
            method="POST",
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json",
            },
        )
        try:
            with request.urlopen(req, timeout=self.timeout_s) as response:
                body = response.read().decode("utf-8")
        except error.HTTPError as exc:
            raw_error = exc.read().decode("utf-8", errors="replace")
            raise error.HTTPError(
                exc.url,
                exc.code,
                f"OpenAI API request failed: {raw_error}",
                exc.headers,
                exc.fp,
            ) from exc
        return json.loads(body)

    @staticmethod
    def parse_reply(response_json: dict[str, Any]) -> ModelContent:
        choices = response_json.get("choices", [])
        if not choices:
            raise ValueError("OpenAI response did not contain choices")

        message = choices[0].get("message", {})
        parts: list[ModelPart] = []
        content = message.get("content")
        if isinstance(content, str) and content:
            parts.append(ModelPart(text=content))
        for call in message.get("tool_calls") or []:
            function = call.get("function", {})
            raw_arguments = function.get("arguments") or "{}"
            try:
                arguments = json.loads(raw_arguments)
            except json.JSONDecodeError as exc:
                raise ValueError(f"Tool call arguments are not valid JSON: {exc}") from exc
            parts.append(
                ModelPart(
                    function_call=ToolCallRequest(
                        call_id=call.get("id") or new_id(),
                        name=function.get("name", ""),
                        args=arguments if isinstance(arguments, dict) else {},
                    )
                )
            )
        return ModelContent(role="model", parts=parts)


def _to_chat_messages(content: ModelContent) -> list[dict[str, Any]]:
    if content.role == "model":
        text = "".join(part.text for part in content.parts if part.text)
        tool_calls = [
            {
                "id": part.function_call.call_id,
                "type": "function",
                "function": {
                    "name": part.function_call.name,
                    "arguments": json.dumps(part.function_call.args),
                },
            }
            for part in content.parts
            if part.function_call is not None
        ]
        message: dict[str, Any] = {"role": "assistant", "content": text or None}
        if tool_calls:
            message["tool_calls"] = tool_calls
        return [message]

    messages: list[dict[str, Any]] = []
    for part in content.parts:
        if part.function_response is not None:
            messages.append(
                {
                    "role": "tool",
                    "tool_call_id": part.function_response.call_id,
                    "content": json.dumps(part.function_response.response),
                }
            )
    text = "\n".join(part.text for part in content.parts if part.text)
    if text:
        messages.append({"role": "user", "content": text})
    return messages


def build_agent_model(settings: Settings) -> AgentModel:
    if settings.model_mode == "echo":
        return EchoAgentModel()

    api_key = settings.resolved_openai_api_key()
    if not api_key:
        raise RuntimeError(
            "OpenAI model mode requested but no API key is configured. "
            "Set OPENAI_API_KEY or CODER_AGENT_OPENAI_API_KEY."
        )
    return OpenAIChatModel(
        api_key=api_key,
        model=settings.llm_model,
        base_url=settings.llm_base_url,
        timeout_s=settings.llm_timeout_s,
        max_retries=settings.llm_max_retries,
        backoff_s=settings.llm_backoff_s,
    )
