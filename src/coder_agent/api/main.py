"""FastAPI app entrypoint for the coder agent."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import StreamingResponse

from coder_agent.agent.executor import TaskExecutor
from coder_agent.api.card import AgentCard, build_agent_card
from coder_agent.api.handler import RequestHandler
from coder_agent.config.settings import Settings, get_settings
from coder_agent.errors import CoderAgentError, TaskNotFound
from coder_agent.events import Event
from coder_agent.llm import AgentModel, build_agent_model
from coder_agent.models import Message, SendMessageRequest, TaskSnapshot
from coder_agent.storage.base import TaskStore
from coder_agent.storage.memory import InMemoryTaskStore
from coder_agent.storage.noop import NoopTaskStore
from coder_agent.storage.postgres import PostgresTaskStore
from coder_agent.tools import ToolScheduler, list_tools

logger = logging.getLogger(__name__)

SSE_HEADERS = {"Cache-Control": "no-cache", "Connection": "keep-alive"}


def _build_store(settings: Settings) -> TaskStore:
    if settings.store_backend == "postgres":
        database_url = settings.resolved_database_url()
        if not database_url:
            raise RuntimeError(
                "Missing database URL. Set CODER_AGENT_DATABASE_URL "
                "or ORCHESTRATOR_DATABASE_URL before starting the app."
            )
        store = PostgresTaskStore(database_url)
        store.migrate()
        logger.info("app event=store_ready backend=postgres")
        return store
    logger.info("app event=store_ready backend=memory")
    return InMemoryTaskStore()


def _ensure_runtime_state(
    app: FastAPI,
    *,
    settings: Settings,
    store_override: TaskStore | None,
    model_override: AgentModel | None,
) -> None:
    if not hasattr(app.state, "settings"):
        app.state.settings = settings

    if not hasattr(app.state, "store"):
        store = store_override or _build_store(settings)
        if settings.read_only_store:
            store = NoopTaskStore(store)
        app.state.store = store

    if not hasattr(app.state, "handler"):
        scheduler = ToolScheduler(
            tool_timeout_s=settings.tool_timeout_s,
            max_retries=settings.tool_max_retries,
            backoff_s=settings.tool_retry_backoff_s,
        )
        executor = TaskExecutor(
            model=model_override or build_agent_model(settings),
            scheduler=scheduler,
            store=app.state.store,
        )
        app.state.executor = executor
        app.state.handler = RequestHandler(
            executor=executor,
            store=app.state.store,
            disconnect_poll_s=settings.disconnect_poll_s,
        )


def create_app(
    *,
    store: TaskStore | None = None,
    model: AgentModel | None = None,
    settings_override: Settings | None = None,
) -> FastAPI:
    settings = settings_override or get_settings()
    agent_card = build_agent_card(url=settings.agent_url)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        _ensure_runtime_state(
            app,
            settings=settings,
            store_override=store,
            model_override=model,
        )
        yield
        await app.state.handler.drain()

    app_lifespan = lifespan if store is None else None
    app = FastAPI(title=settings.app_name, lifespan=app_lifespan)

    # Keep test paths reliable when lifespan is not executed by the client.
    if store is not None:
        _ensure_runtime_state(
            app,
            settings=settings,
            store_override=store,
            model_override=model,
        )

    def _get_handler(request: Request) -> RequestHandler:
        if not hasattr(request.app.state, "handler"):
            _ensure_runtime_state(
                request.app,
                settings=settings,
                store_override=store,
                model_override=model,
            )
        return request.app.state.handler

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok", "service": settings.app_name}

    @app.get("/.well-known/agent-card.json", response_model=AgentCard)
    def agent_card_endpoint() -> AgentCard:
        return agent_card

    @app.get("/tools")
    def tools() -> dict[str, list[str]]:
        return {"tools": list_tools()}

    @app.post("/messages")
    async def send_message(payload: SendMessageRequest, request: Request) -> StreamingResponse:
        handler = _get_handler(request)
        events = handler.on_message_stream(payload.message, request)
        return StreamingResponse(
            _sse(events),
            media_type="text/event-stream",
            headers=SSE_HEADERS,
        )

    @app.get("/tasks/{task_id}", response_model=TaskSnapshot)
    async def get_task(task_id: str, request: Request) -> TaskSnapshot:
        handler = _get_handler(request)
        try:
            return await handler.get_task(task_id)
        except TaskNotFound as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except CoderAgentError as exc:
            raise HTTPException(status_code=500, detail=str(exc)) from exc

    @app.post("/tasks/{task_id}/cancel")
    async def cancel_task(task_id: str, request: Request) -> dict[str, Any]:
        handler = _get_handler(request)
        event = await handler.cancel(task_id)
        return event.model_dump(mode="json")

    @app.get("/tasks/{task_id}/subscribe")
    async def resubscribe(task_id: str, request: Request) -> StreamingResponse:
        handler = _get_handler(request)
        try:
            await handler.get_task(task_id)
        except TaskNotFound as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return StreamingResponse(
            _sse(handler.resubscribe(task_id)),
            media_type="text/event-stream",
            headers=SSE_HEADERS,
        )

    @app.get("/contexts/{context_id}/history", response_model=list[Message])
    async def context_history(context_id: str, request: Request) -> list[Message]:
        handler = _get_handler(request)
        try:
            return await handler.context_history(context_id)
        except CoderAgentError as exc:
            raise HTTPException(status_code=500, detail=str(exc)) from exc

    return app


async def _sse(events: AsyncIterator[Event]) -> AsyncIterator[str]:
    try:
        async for event in events:
            yield f"event: {event.kind}\ndata: {event.model_dump_json()}\n\n"
    finally:
        aclose = getattr(events, "aclose", None)
        if aclose is not None:
            await aclose()


# Module-level app for `uvicorn coder_agent.api.main:app`.
app = create_app()
