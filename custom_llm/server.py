from __future__ import annotations

import asyncio
import json
import logging
import os
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

from fastapi import FastAPI, Request, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, ConfigDict
from starlette.websockets import WebSocketState

from .bounded_queue import BoundedDequeQueue
from .clock import Clock, RealClock
from .config import PromptConfig, PromptStore, ServerConfig
from .generator import ResponseGenerator
from .llm_client import LLMClient, build_llm_client
from .logs import configure_logging, log_event
from .metrics import Metrics
from .orchestrator import Orchestrator
from .protocol import CLOSE_NORMAL
from .retell_api import RetellAPI, RetellAPIError
from .security import SIGNATURE_HEADER, SignatureVerifier, build_webhook_verifier, compact_json, header_value
from .state import CallSession
from .tools import ToolRegistry
from .trace import TraceSink
from .transcript_log import TranscriptLog, build_transcript_log
from .transport_ws import ResponseGate, Transport, TransportDisconnected, socket_reader, socket_writer


logger = logging.getLogger(__name__)

WEBHOOK_EVENTS = {"call_started", "call_ended", "call_analyzed"}


class StarletteTransport(Transport):
    def __init__(self, ws: WebSocket) -> None:
        self._ws = ws

    async def recv(self) -> str | bytes:
        message = await self._ws.receive()
        if message["type"] == "websocket.disconnect":
            raise TransportDisconnected(int(message.get("code") or CLOSE_NORMAL))
        if message.get("bytes") is not None:
            return bytes(message["bytes"])
        return str(message.get("text") or "")

    async def send_text(self, text: str) -> None:
        await self._ws.send_text(text)

    async def close(self, *, code: int = CLOSE_NORMAL, reason: str = "") -> None:
        if WebSocketState.DISCONNECTED in (self._ws.client_state, self._ws.application_state):
            return
        try:
            await self._ws.close(code=code, reason=reason)
        except Exception:
            # The peer already went away mid-close.
            return


class RegisterCallRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")
    agent_id: str


class SetPromptsRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")
    newBeginSentence: Optional[str] = None
    newAgentPrompt: Optional[str] = None


def create_app(
    config: Optional[ServerConfig] = None,
    *,
    prompt_store: Optional[PromptStore] = None,
    llm: Optional[LLMClient] = None,
    transcript_log: Optional[TranscriptLog] = None,
    retell_api: Optional[RetellAPI] = None,
    webhook_verifier: Optional[SignatureVerifier] = None,
    clock: Optional[Clock] = None,
) -> FastAPI:
    """
    Build the app with its process-wide collaborators.

    Every argument defaults to what the environment configures; tests pass fakes.
    """
    cfg = config or ServerConfig.from_env()
    configure_logging(cfg.log_level)
    clk = clock or RealClock()
    llm_client = llm or build_llm_client(cfg, clock=clk)
    log_sink = transcript_log or build_transcript_log(cfg)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        log_event(
            logger,
            "startup",
            component="server",
            llm_provider=cfg.llm_provider,
            transcript_log=cfg.transcript_log,
        )
        yield
        await llm_client.aclose()
        await log_sink.aclose()

    app = FastAPI(lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.config = cfg
    app.state.clock = clk
    app.state.prompt_store = prompt_store or PromptStore(PromptConfig.from_env())
    app.state.llm = llm_client
    app.state.transcript_log = log_sink
    app.state.retell_api = retell_api or RetellAPI(
        api_key=cfg.retell_api_key,
        base_url=cfg.retell_base_url,
        timeout_ms=cfg.retell_http_timeout_ms,
    )
    app.state.webhook_verifier = webhook_verifier or build_webhook_verifier(
        api_key=cfg.retell_api_key,
        now_ms=_wall_clock_ms,
    )

    app.add_api_route("/healthz", healthz, methods=["GET"])
    app.add_api_route("/webhook", webhook, methods=["POST"])
    app.add_api_route("/register-call-on-your-server", register_call, methods=["POST"])
    app.add_api_route("/get-prompts", get_prompts, methods=["GET"])
    app.add_api_route("/set-prompts", set_prompts, methods=["POST"])
    app.add_api_route("/create-agent", create_agent, methods=["POST"])
    app.add_api_websocket_route("/llm-websocket/{call_id}", llm_websocket)
    return app


def _wall_clock_ms() -> int:
    return int(time.time() * 1000)


# ---------------------------------------------------------------------------
# HTTP endpoints
# ---------------------------------------------------------------------------


async def healthz() -> dict[str, Any]:
    return {"ok": True}


async def webhook(request: Request) -> Response:
    raw = (await request.body()).decode("utf-8", errors="replace")
    signature = header_value(dict(request.headers), SIGNATURE_HEADER) or ""
    try:
        payload: Any = json.loads(raw)
    except ValueError:
        payload = None

    verify: SignatureVerifier = request.app.state.webhook_verifier
    valid = verify(raw, signature) or (payload is not None and verify(compact_json(payload), signature))
    if not valid:
        log_event(logger, "webhook_rejected", component="webhook", level=logging.WARNING, reason="invalid_signature")
        return Response(status_code=401)
    if not isinstance(payload, dict):
        log_event(logger, "webhook_rejected", component="webhook", level=logging.WARNING, reason="bad_payload")
        return Response(status_code=400)

    event = str(payload.get("event", ""))
    data = payload.get("data") or payload.get("call") or {}
    call_id = str(data.get("call_id", "")) if isinstance(data, dict) else ""
    if event in WEBHOOK_EVENTS:
        log_event(logger, event, component="webhook", call_id=call_id)
    else:
        log_event(logger, "unknown_event", component="webhook", level=logging.WARNING, received_event=event)
    return JSONResponse({"received": True})


async def register_call(request: Request, body: RegisterCallRequest) -> Response:
    api: RetellAPI = request.app.state.retell_api
    try:
        call = await api.create_web_call(agent_id=body.agent_id)
    except RetellAPIError as e:
        log_event(logger, "create_web_call_failed", component="server", level=logging.ERROR, error=str(e))
        return JSONResponse(status_code=500, content={"error": "Failed to create web call"})
    return JSONResponse(call)


async def get_prompts(request: Request) -> dict[str, str]:
    prompts: PromptConfig = request.app.state.prompt_store.snapshot()
    return {"beginSentence": prompts.begin_sentence, "agentPrompt": prompts.agent_prompt}


async def set_prompts(request: Request, body: SetPromptsRequest) -> dict[str, str]:
    store: PromptStore = request.app.state.prompt_store
    store.update(begin_sentence=body.newBeginSentence, agent_prompt=body.newAgentPrompt)
    log_event(
        logger,
        "prompts_updated",
        component="server",
        begin_sentence_changed=bool(body.newBeginSentence),
        agent_prompt_changed=bool(body.newAgentPrompt),
    )
    return {"message": "Prompts updated successfully"}


async def create_agent(request: Request) -> Response:
    api: RetellAPI = request.app.state.retell_api
    try:
        fields = await request.json()
    except ValueError:
        fields = None
    if not isinstance(fields, dict):
        return JSONResponse(status_code=400, content={"error": "Expected a JSON object"})
    try:
        agent = await api.create_agent(fields)
    except RetellAPIError as e:
        log_event(logger, "create_agent_failed", component="server", level=logging.ERROR, error=str(e))
        return JSONResponse(status_code=500, content={"error": "Failed to create agent"})
    return JSONResponse(status_code=201, content=agent)


# ---------------------------------------------------------------------------
# Websocket session
# ---------------------------------------------------------------------------


async def llm_websocket(ws: WebSocket, call_id: str) -> None:
    await _run_session(ws, call_id)


async def _run_session(ws: WebSocket, call_id: str) -> None:
    state = ws.app.state
    cfg: ServerConfig = state.config
    clock: Clock = state.clock
    # Prompts are read once per call; later /set-prompts calls affect new calls only.
    prompts: PromptConfig = state.prompt_store.snapshot()

    await ws.accept()
    log_event(logger, "connect", component="ws_session", call_id=call_id)

    metrics = Metrics()
    trace = TraceSink()
    inbound_q: BoundedDequeQueue = BoundedDequeQueue(maxsize=cfg.inbound_queue_max)
    outbound_q: BoundedDequeQueue = BoundedDequeQueue(maxsize=cfg.outbound_queue_max)
    shutdown_evt = asyncio.Event()
    gate = ResponseGate()
    tools = ToolRegistry(clock=clock, metrics=metrics, timeout_ms=cfg.tool_timeout_ms)
    generator = ResponseGenerator(
        call_id=call_id,
        llm=state.llm,
        tools=tools,
        clock=clock,
        metrics=metrics,
        prompts=prompts,
        model_timeout_ms=cfg.model_timeout_ms,
        max_tool_rounds=cfg.max_tool_rounds,
        apology_text=cfg.apology_text,
    )
    session = CallSession(call_id=call_id, transcript_log=state.transcript_log, metrics=metrics)

    transport = StarletteTransport(ws)
    orch = Orchestrator(
        call_id=call_id,
        config=cfg,
        clock=clock,
        metrics=metrics,
        trace=trace,
        inbound_q=inbound_q,
        outbound_q=outbound_q,
        shutdown_evt=shutdown_evt,
        gate=gate,
        generator=generator,
        session=session,
    )

    reader_task = asyncio.create_task(
        socket_reader(
            transport=transport,
            inbound_q=inbound_q,
            metrics=metrics,
            shutdown_evt=shutdown_evt,
            max_frame_bytes=cfg.ws_max_frame_bytes,
            structured_logs=cfg.ws_structured_logging,
            call_id=call_id,
        )
    )
    writer_task = asyncio.create_task(
        socket_writer(
            transport=transport,
            outbound_q=outbound_q,
            metrics=metrics,
            shutdown_evt=shutdown_evt,
            gate=gate,
            clock=clock,
            inbound_q=inbound_q,
            ws_write_timeout_ms=cfg.ws_write_timeout_ms,
            ws_max_consecutive_write_timeouts=cfg.ws_max_consecutive_write_timeouts,
            call_id=call_id,
        )
    )
    orch_task = asyncio.create_task(orch.run())

    async def _teardown() -> None:
        if not orch_task.done():
            # Handler cancelled mid-call: close the session through the orchestrator.
            await orch.end_session(reason="handler_cancelled")
            await asyncio.gather(orch_task, return_exceptions=True)
        shutdown_evt.set()
        reader_task.cancel()
        writer_task.cancel()
        await asyncio.gather(reader_task, writer_task, return_exceptions=True)
        await transport.close(code=orch.close_code, reason=orch.close_reason[:120])
        log_event(
            logger,
            "disconnect",
            component="ws_session",
            call_id=call_id,
            code=orch.close_code,
            reason=orch.close_reason,
            metrics=metrics.snapshot()["counters"],
        )

    try:
        # Cancelling the handler must not cancel the orchestrator out from under its close path.
        await asyncio.shield(orch_task)
    finally:
        await asyncio.shield(asyncio.ensure_future(_teardown()))


app = create_app()


def main() -> None:
    import uvicorn

    uvicorn.run(
        "custom_llm.server:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8080")),
    )


if __name__ == "__main__":
    main()
