# Copyright (c) 2025 Bytedance Ltd. and/or its affiliates
# SPDX-License-Identifier: MIT

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse

from src.chat.agent import ChatAgent, LLMChatAgent
from src.chat.errors import TurnError
from src.chat.events import QueueEventSink
from src.chat.turn import TurnController
from src.config.configuration import SummarizationSettings, TurnSettings
from src.config.loader import get_str_env
from src.llms.llm import get_llm_by_type
from src.server.chat_request import ChatRequest
from src.server.session.dependencies import (
    get_session_store,
    initialise_session_store,
    set_session_store,
)
from src.server.session.router import router as session_router
from src.server.session.store import SQLiteSessionStore
from src.summarization import MessageSummarizer, SummaryScheduler

logger = logging.getLogger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def _build_summary_scheduler(store: SQLiteSessionStore) -> Optional[SummaryScheduler]:
    settings = SummarizationSettings.from_env()
    if not settings.enabled:
        logger.info("Message summarization disabled")
        return None
    try:
        llm = get_llm_by_type("summary")
    except Exception as exc:  # noqa: BLE001 - LLM misconfiguration should not stop the server
        logger.warning("LLM unavailable for message summarization: %s", exc)
        return None
    return SummaryScheduler(store, MessageSummarizer(llm), settings=settings)


@asynccontextmanager
async def lifespan(app: FastAPI):
    session_store = initialise_session_store()
    await session_store.init()
    set_session_store(session_store)

    scheduler = _build_summary_scheduler(session_store)
    if scheduler is not None:
        scheduler.start()
    app.state.summary_scheduler = scheduler
    app.state.turn_tasks = set()
    try:
        yield
    finally:
        # Let in-flight turns finish saving before the queue is closed.
        pending = list(app.state.turn_tasks)
        if pending:
            logger.info("Waiting for %d in-flight turns", len(pending))
            await asyncio.gather(*pending, return_exceptions=True)
        if scheduler is not None:
            await scheduler.stop()
        await session_store.close()


app = FastAPI(
    title="Agent Chat API",
    description="Streaming conversational agent with background summarization",
    version="0.1.0",
    lifespan=lifespan,
)

allowed_origins_str = get_str_env("ALLOWED_ORIGINS", "http://localhost:3000")
allowed_origins = [origin.strip() for origin in allowed_origins_str.split(",")]

logger.info("Allowed origins: %s", allowed_origins)

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)

app.include_router(session_router)


ChatAgentFactory = Callable[[Optional[str]], ChatAgent]


def _create_chat_agent(model: Optional[str] = None) -> ChatAgent:
    try:
        llm = get_llm_by_type("basic", model=model)
    except Exception as exc:  # noqa: BLE001
        logger.warning("LLM unavailable for chat (model=%s): %s", model, exc)
        raise HTTPException(status_code=503, detail="Chat model is not configured")
    return LLMChatAgent(llm, marker=TurnSettings.from_env().answer_marker)


def get_chat_agent_factory() -> ChatAgentFactory:
    return _create_chat_agent


@app.post("/api/chat/stream")
async def chat_stream(
    request: ChatRequest,
    http_request: Request,
    session_store: SQLiteSessionStore = Depends(get_session_store),
    agent_factory: ChatAgentFactory = Depends(get_chat_agent_factory),
):
    session = await session_store.get_session(request.session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")

    model = request.agent_config.model if request.agent_config else None
    agent = agent_factory(model)

    controller = TurnController(
        session_store,
        agent,
        http_request.app.state.summary_scheduler,
        settings=TurnSettings.from_env(),
    )
    sink = QueueEventSink(session.id)

    # The turn runs outside the response generator so a disconnect cannot skip the save.
    turn_task = asyncio.create_task(controller.run_turn(session.id, request.query, sink))
    turn_tasks: set = http_request.app.state.turn_tasks
    turn_tasks.add(turn_task)
    turn_task.add_done_callback(turn_tasks.discard)
    turn_task.add_done_callback(_log_turn_outcome)

    return StreamingResponse(
        _astream_turn(sink, turn_task),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


async def _astream_turn(sink: QueueEventSink, turn_task: asyncio.Task) -> AsyncIterator[str]:
    try:
        async for frame in sink.stream():
            yield frame
    finally:
        if not sink.closed and not turn_task.done():
            logger.info("Client disconnected mid-stream; canceling agent call")
            turn_task.cancel()


def _log_turn_outcome(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None and not isinstance(exc, TurnError):
        logger.error("Turn task failed unexpectedly: %s", exc)
