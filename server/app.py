"""
FastAPI server for the restock voice agent.

Endpoints:
- POST /api/make-call, /api/terminate-call, /api/analyze-call: call management
- GET /api/calls, /api/conversation/{callId}, /api/order/{callId}: live state
- GET /api/conversation-history[/{filename}]: archived transcripts
- POST /api/voice/*: Twilio voice webhooks (always answer TwiML)
- GET /audio/{filename}: synthesized clips for <Play>
- WS /ws/events: observer event stream
- GET /health, /api/health, /metrics
- GET /api/performance, POST /api/test/latency: service latencies
- GET /api/azure/status, /api/azure/voices, POST /api/azure/test-tts, GET /api/twilio/status
"""

import asyncio
import sys
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Awaitable, Dict, List, Optional, Set
import logging

from fastapi import Depends, FastAPI, Request, Response, WebSocket, WebSocketDisconnect
from fastapi.responses import FileResponse, JSONResponse
from pydantic import BaseModel
import structlog
import uvicorn

from src.sales_agent.config import Config, ConfigError, get_config, init_config
from src.sales_agent.analysis import CallAnalyzer, default_analysis_prompt
from src.sales_agent.archive import TranscriptArchive
from src.sales_agent.cache import ResponseCache
from src.sales_agent.carrier import TwilioCarrier, WebhookUrls
from src.sales_agent.directives import Directive, Hangup, Speak, render_twiml
from src.sales_agent.errors import CarrierError, GenerationError, NotFoundError, SynthesisError
from src.sales_agent.events import EventBroadcaster, encode_event
from src.sales_agent.lifecycle import CallLifecycleManager
from src.sales_agent.llm import OpenAILLM
from src.sales_agent.orchestrator import TECHNICAL_DIFFICULTIES_TEXT, TurnOrchestrator
from src.sales_agent.performance import LatencyTracker
from src.sales_agent.session import CustomerProfile, Role, SessionStore
from src.sales_agent.stt import Transcriber, create_transcriber
from src.sales_agent.tts import TTSManager, create_provider
from src.sales_agent.tts_providers.azure import AzureTTS
from src.sales_agent.tts_providers.base import VoiceOptions


# Initialize structured logging
def configure_logging(log_level: str = "INFO") -> None:
    """Configure structured logging."""
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer() if log_level != "DEBUG" else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # Set log level
    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, log_level.upper(), logging.INFO),
    )


logger = structlog.get_logger(__name__)


@dataclass
class ServerMetrics:
    """Server-wide metrics."""
    start_time: float = field(default_factory=time.time)
    total_calls: int = 0
    failed_calls: int = 0
    webhooks: int = 0
    event_subscribers: int = 0
    errors: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "uptime_seconds": round(time.time() - self.start_time, 2),
            "total_calls": self.total_calls,
            "failed_calls": self.failed_calls,
            "webhooks": self.webhooks,
            "event_subscribers": self.event_subscribers,
            "errors": self.errors,
        }


# Global metrics
metrics = ServerMetrics()


@dataclass
class AgentRuntime:
    """Everything one server process owns: the store, cache and adapters."""
    config: Config
    store: SessionStore
    cache: ResponseCache
    broadcaster: EventBroadcaster
    llm: OpenAILLM
    tts: TTSManager
    transcriber: Transcriber
    carrier: TwilioCarrier
    archive: TranscriptArchive
    lifecycle: CallLifecycleManager
    orchestrator: TurnOrchestrator
    analyzer: CallAnalyzer
    latency: LatencyTracker
    background_tasks: Set[asyncio.Task] = field(default_factory=set)

    def spawn(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self.background_tasks.add(task)
        task.add_done_callback(self.background_tasks.discard)

    async def close(self) -> None:
        for task in list(self.background_tasks):
            task.cancel()
        self.lifecycle.shutdown()
        await self.tts.close()
        await self.transcriber.close()
        await self.llm.close()


def build_runtime(
    config: Config,
    *,
    llm: Optional[OpenAILLM] = None,
    tts: Optional[TTSManager] = None,
    transcriber: Optional[Transcriber] = None,
    carrier: Optional[TwilioCarrier] = None,
) -> AgentRuntime:
    """Wire the runtime; any adapter can be swapped (tests pass fakes)."""
    store = SessionStore()
    cache = ResponseCache()
    broadcaster = EventBroadcaster()
    latency = LatencyTracker()
    urls = WebhookUrls(config.base_url)

    llm = llm or OpenAILLM(config)
    tts = tts or TTSManager(
        create_provider(config),
        cache=cache,
        audio_dir=config.audio_path,
        base_url=config.base_url,
        cleanup_seconds=config.audio_cleanup_seconds,
    )
    transcriber = transcriber or create_transcriber(config)
    carrier = carrier or TwilioCarrier(config)
    archive = TranscriptArchive(config.history_path, agent_name=config.agent_name)

    lifecycle = CallLifecycleManager(
        store=store,
        carrier=carrier,
        archive=archive,
        broadcaster=broadcaster,
        urls=urls,
        latency=latency,
        config=config,
    )
    orchestrator = TurnOrchestrator(
        store=store,
        cache=cache,
        llm=llm,
        tts=tts,
        transcriber=transcriber,
        broadcaster=broadcaster,
        lifecycle=lifecycle,
        urls=urls,
        latency=latency,
        config=config,
    )
    return AgentRuntime(
        config=config,
        store=store,
        cache=cache,
        broadcaster=broadcaster,
        llm=llm,
        tts=tts,
        transcriber=transcriber,
        carrier=carrier,
        archive=archive,
        lifecycle=lifecycle,
        orchestrator=orchestrator,
        analyzer=CallAnalyzer(llm, config),
        latency=latency,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    # Startup
    logger.info("Starting restock voice agent server...")

    try:
        # Initialize and validate configuration
        config = init_config()
        configure_logging(config.log_level)

        runtime = getattr(app.state, "runtime", None) or build_runtime(config)
        config.history_path.mkdir(parents=True, exist_ok=True)
        config.audio_path.mkdir(parents=True, exist_ok=True)
        app.state.runtime = runtime

        logger.info(
            "Server ready",
            port=config.port,
            public_base_url=config.base_url,
            tts_provider=runtime.tts.provider_name,
            stt_provider=type(runtime.transcriber).__name__,
        )

    except ConfigError as e:
        logger.error("Configuration error", error=str(e))
        sys.exit(1)

    yield

    # Shutdown
    logger.info("Shutting down server...")
    await runtime.close()
    app.state.runtime = None


# Create FastAPI app
app = FastAPI(
    title="Restock Voice Agent",
    description="Outbound AI sales calls over Twilio",
    version="1.0.0",
    lifespan=lifespan,
)


def get_runtime(request: Request) -> AgentRuntime:
    return request.app.state.runtime


def twiml_response(directives: List[Directive], runtime: AgentRuntime) -> Response:
    return Response(
        content=render_twiml(directives, language=runtime.config.speech_language),
        media_type="application/xml",
    )


async def _run_voice_handler(call_id: str, webhook: str, handler: Awaitable[List[Directive]]) -> List[Directive]:
    """Voice webhooks must always answer TwiML, even when a handler breaks."""
    metrics.webhooks += 1
    try:
        return await handler
    except Exception:
        logger.exception("Error in voice handling", call_id=call_id, webhook=webhook)
        metrics.errors += 1
        return [Speak(TECHNICAL_DIFFICULTIES_TEXT), Hangup()]


# ----------------------------------------------------------------------
# Request models
# ----------------------------------------------------------------------


class MakeCallRequest(BaseModel):
    phoneNumber: Optional[str] = None
    context: Optional[str] = None
    customerName: Optional[str] = None
    hotelName: Optional[str] = None
    lastProduct: Optional[str] = None


class TerminateCallRequest(BaseModel):
    callId: Optional[str] = None


class AnalyzeCallRequest(BaseModel):
    callId: Optional[str] = None
    prompt: Optional[str] = None


class TTSTestRequest(BaseModel):
    text: Optional[str] = None
    options: Optional[Dict[str, Any]] = None


# ----------------------------------------------------------------------
# Health / metrics
# ----------------------------------------------------------------------


@app.get("/health")
async def health_check(runtime: AgentRuntime = Depends(get_runtime)) -> JSONResponse:
    """Health check endpoint."""
    return JSONResponse(
        content={
            "status": "healthy",
            "timestamp": time.time(),
            "active_calls": len(runtime.store),
        }
    )


@app.get("/api/health")
async def api_health(runtime: AgentRuntime = Depends(get_runtime)) -> JSONResponse:
    config = runtime.config
    return JSONResponse(
        content={
            "status": "OK",
            "timestamp": time.time(),
            "services": {
                "twilio": bool(config.twilio_account_sid),
                "openai": bool(config.openai_api_key),
                "tts": runtime.tts.provider_name,
                "stt": type(runtime.transcriber).__name__,
                "azure": {
                    "configured": bool(config.azure_speech_key and config.azure_speech_region),
                },
            },
            "activeCalls": len(runtime.store),
        }
    )


@app.get("/metrics")
async def get_metrics(runtime: AgentRuntime = Depends(get_runtime)) -> JSONResponse:
    """Metrics endpoint."""
    return JSONResponse(
        content={
            **metrics.to_dict(),
            "active_calls": len(runtime.store),
            "pending_removals": runtime.lifecycle.pending_removals,
            "cache": runtime.cache.stats(),
            "latency": runtime.latency.summary(),
        }
    )


# ----------------------------------------------------------------------
# Service diagnostics
# ----------------------------------------------------------------------


def _azure_provider(runtime: AgentRuntime) -> Optional[AzureTTS]:
    provider = runtime.tts.provider
    return provider if isinstance(provider, AzureTTS) else None


@app.get("/api/performance")
async def performance(runtime: AgentRuntime = Depends(get_runtime)) -> JSONResponse:
    """Recent OpenAI / TTS / Twilio latencies."""
    return JSONResponse(
        content={
            "metrics": runtime.latency.to_dict(),
            "summary": runtime.latency.summary(),
        }
    )


@app.post("/api/test/latency")
async def latency_test(runtime: AgentRuntime = Depends(get_runtime)) -> JSONResponse:
    """Time one short completion and, when a voice is configured, one uncached synthesis."""
    start = time.perf_counter()
    current = {"openai": 0.0, "tts": 0.0}
    try:
        with runtime.latency.measure("openai", "test_completion"):
            await runtime.llm.complete(
                [
                    {"role": "system", "content": "You are a helpful assistant."},
                    {"role": "user", "content": "Say hello briefly."},
                ],
                max_tokens=20,
            )
        current["openai"] = runtime.latency.last("openai")

        provider = runtime.tts.provider
        if provider is not None:
            with runtime.latency.measure("tts", "test_tts"):
                await provider.synthesize("Hello, this is a test message.", VoiceOptions())
            current["tts"] = runtime.latency.last("tts")
    except (GenerationError, SynthesisError) as e:
        logger.error("Latency test failed", error=str(e))
        return JSONResponse(status_code=500, content={"error": "Latency test failed", "details": str(e)})

    current["total"] = round((time.perf_counter() - start) * 1000, 1)
    return JSONResponse(
        content={
            "success": True,
            "metrics": {
                "current": current,
                "historical": runtime.latency.to_dict(),
                "cache": runtime.cache.stats(),
            },
        }
    )


@app.get("/api/azure/status")
async def azure_status(runtime: AgentRuntime = Depends(get_runtime)) -> JSONResponse:
    provider = _azure_provider(runtime)
    if provider is None:
        return JSONResponse(content={"enabled": False, "error": "Azure speech is not the active TTS provider"})

    status = {
        "enabled": True,
        "region": runtime.config.azure_speech_region,
        "customVoice": runtime.config.azure_custom_voice_name,
        "voice": provider.voice_name,
    }
    try:
        voices = await provider.list_voices(runtime.config.speech_language)
    except SynthesisError as e:
        logger.warning("Azure status check failed", error=str(e))
        return JSONResponse(content={**status, "connected": False, "error": str(e)})
    return JSONResponse(content={**status, "connected": True, "voicesAvailable": len(voices)})


@app.get("/api/azure/voices")
async def azure_voices(runtime: AgentRuntime = Depends(get_runtime)) -> JSONResponse:
    provider = _azure_provider(runtime)
    if provider is None:
        return JSONResponse(status_code=500, content={"error": "Azure integration not available"})

    configured = {
        "currentVoice": runtime.config.azure_custom_voice_name,
        "voiceConfigured": provider.voice_name,
    }
    try:
        voices = await provider.list_voices(runtime.config.speech_language)
    except SynthesisError as e:
        logger.warning("Azure voice listing unavailable", error=str(e))
        fallback = {"name": provider.voice_name, "locale": runtime.config.speech_language, "voiceType": "Neural"}
        return JSONResponse(
            content={
                "voices": [fallback],
                **configured,
                "note": "Using configured voice (voice listing unavailable)",
            }
        )
    return JSONResponse(content={"voices": voices, **configured})


@app.post("/api/azure/test-tts")
async def azure_test_tts(body: TTSTestRequest, runtime: AgentRuntime = Depends(get_runtime)) -> JSONResponse:
    if _azure_provider(runtime) is None:
        return JSONResponse(status_code=500, content={"error": "Azure integration not available"})
    if not (body.text or "").strip():
        return JSONResponse(status_code=400, content={"error": "Text is required"})

    try:
        clip = await runtime.tts.render(body.text, VoiceOptions.from_dict(body.options))
    except SynthesisError as e:
        logger.error("Azure TTS test failed", error=str(e))
        return JSONResponse(status_code=500, content={"success": False, "error": str(e)})

    return JSONResponse(
        content={
            "success": True,
            "message": "TTS test successful",
            "audioFileName": clip.filename,
            "audioUrl": f"/audio/{clip.filename}",
        }
    )


@app.get("/api/twilio/status")
async def twilio_status(runtime: AgentRuntime = Depends(get_runtime)) -> JSONResponse:
    """Account state and usable caller IDs; carrier failures map to 502."""
    return JSONResponse(content=await runtime.carrier.account_status())


# ----------------------------------------------------------------------
# Call management
# ----------------------------------------------------------------------


@app.post("/api/make-call")
async def make_call(body: MakeCallRequest, runtime: AgentRuntime = Depends(get_runtime)) -> JSONResponse:
    if not (body.phoneNumber or "").strip():
        return JSONResponse(status_code=400, content={"error": "Phone number is required"})

    profile = CustomerProfile(
        manager_name=body.customerName or "",
        venue_name=body.hotelName or "",
        last_product=body.lastProduct or "",
    )

    # Warm LLM/TTS while the phone rings.
    runtime.spawn(runtime.orchestrator.prewarm())

    try:
        session = await runtime.lifecycle.start_call(body.phoneNumber, body.context, profile)
    except CarrierError:
        metrics.failed_calls += 1
        raise

    metrics.total_calls += 1
    context = session.context
    return JSONResponse(
        content={
            "success": True,
            "callId": session.call_id,
            "twilioCallSid": session.carrier_call_ref,
            "message": "Call initiated successfully",
            "context": context[:200] + "..." if len(context) > 200 else context,
            "phoneNumber": session.phone_number,
            "fromNumber": runtime.config.twilio_phone_number,
        }
    )


@app.post("/api/terminate-call")
async def terminate_call(body: TerminateCallRequest, runtime: AgentRuntime = Depends(get_runtime)) -> JSONResponse:
    if not body.callId:
        return JSONResponse(status_code=400, content={"error": "Call ID is required"})

    session = runtime.store.require(body.callId)
    order = session.order.to_dict()
    artifact_id = await runtime.lifecycle.terminate_call(body.callId)

    return JSONResponse(
        content={
            "success": True,
            "message": "Call terminated successfully",
            "callId": body.callId,
            "artifactId": artifact_id,
            "orderDetails": order,
        }
    )


@app.get("/api/calls")
async def list_calls(runtime: AgentRuntime = Depends(get_runtime)) -> JSONResponse:
    return JSONResponse(content={"calls": [s.to_dict() for s in runtime.store.active()]})


@app.get("/api/conversation/{call_id}")
async def get_conversation(call_id: str, runtime: AgentRuntime = Depends(get_runtime)) -> JSONResponse:
    session = runtime.store.get(call_id)
    if session is None:
        raise NotFoundError(call_id, what="Conversation")
    return JSONResponse(
        content={
            "callId": call_id,
            "conversation": [t.to_dict() for t in session.history.turns(include_system=False)],
            "orderDetails": session.order.to_dict(),
        }
    )


@app.get("/api/order/{call_id}")
async def get_order(call_id: str, runtime: AgentRuntime = Depends(get_runtime)) -> JSONResponse:
    session = runtime.store.get(call_id)
    if session is None:
        raise NotFoundError(call_id, what="Order")
    return JSONResponse(
        content={
            "callId": call_id,
            "orderDetails": session.order.to_dict(),
            "flags": session.flags.to_dict(),
        }
    )


@app.post("/api/analyze-call")
async def analyze_call(body: AnalyzeCallRequest, runtime: AgentRuntime = Depends(get_runtime)) -> JSONResponse:
    if not body.callId:
        return JSONResponse(status_code=400, content={"error": "Call ID is required"})

    session = runtime.store.get(body.callId)
    prompt = body.prompt
    if not prompt:
        if session is None:
            raise NotFoundError(body.callId)
        prompt = default_analysis_prompt(session)

    try:
        analysis = await runtime.analyzer.analyze(body.callId, prompt)
    except GenerationError as e:
        return JSONResponse(status_code=500, content={"error": "Failed to analyze call", "details": str(e)})

    artifact_id = None
    if session is not None and session.history.last_of(Role.CALLER) is not None:
        artifact_id = runtime.lifecycle.record_analysis(body.callId, analysis)

    return JSONResponse(content={"analysis": analysis.to_dict(), "artifactId": artifact_id})


@app.get("/api/conversation-history")
async def list_history(runtime: AgentRuntime = Depends(get_runtime)) -> JSONResponse:
    files = runtime.archive.list_files()
    return JSONResponse(
        content={
            "files": files,
            "totalFiles": len(files),
            "directory": str(runtime.archive.directory),
        }
    )


@app.get("/api/conversation-history/{filename}")
async def download_history(filename: str, runtime: AgentRuntime = Depends(get_runtime)) -> Response:
    path = runtime.archive.path_for(filename)
    if path is None:
        return JSONResponse(status_code=404, content={"error": "File not found"})
    return FileResponse(path, media_type="text/plain", filename=filename)


@app.get("/audio/{filename}")
async def serve_audio(filename: str, runtime: AgentRuntime = Depends(get_runtime)) -> Response:
    path = runtime.tts.resolve(filename)
    if path is None:
        return JSONResponse(status_code=404, content={"error": "Audio not found"})
    return FileResponse(path, media_type="audio/mpeg")


# ----------------------------------------------------------------------
# Twilio voice webhooks
# ----------------------------------------------------------------------


@app.post("/api/voice/incoming")
async def voice_incoming(callId: str = "", runtime: AgentRuntime = Depends(get_runtime)) -> Response:
    directives = await _run_voice_handler(
        callId, "incoming", runtime.orchestrator.handle_connected(callId)
    )
    return twiml_response(directives, runtime)


@app.post("/api/voice/process-speech")
async def voice_process_speech(
    request: Request,
    callId: str = "",
    runtime: AgentRuntime = Depends(get_runtime),
) -> Response:
    form = await request.form()
    directives = await _run_voice_handler(
        callId, "process-speech", runtime.orchestrator.handle_speech(callId, dict(form))
    )
    return twiml_response(directives, runtime)


@app.post("/api/voice/partial-speech")
async def voice_partial_speech(
    request: Request,
    callId: str = "",
    runtime: AgentRuntime = Depends(get_runtime),
) -> Response:
    form = await request.form()
    partial = form.get("PartialSpeechResult") or ""
    directives = runtime.orchestrator.handle_partial(callId, str(partial))
    return twiml_response(directives, runtime)


@app.post("/api/voice/timeout")
async def voice_timeout(callId: str = "", runtime: AgentRuntime = Depends(get_runtime)) -> Response:
    directives = await _run_voice_handler(
        callId, "timeout", runtime.orchestrator.handle_timeout(callId)
    )
    return twiml_response(directives, runtime)


@app.post("/api/voice/status")
async def voice_status(request: Request, runtime: AgentRuntime = Depends(get_runtime)) -> Response:
    form = await request.form()
    metrics.webhooks += 1
    runtime.lifecycle.handle_status(str(form.get("CallSid") or ""), str(form.get("CallStatus") or ""))
    return Response(status_code=200)


@app.post("/api/voice/call-ended")
async def voice_call_ended(callId: str = "", runtime: AgentRuntime = Depends(get_runtime)) -> Response:
    runtime.lifecycle.finalize(callId, reason="call_ended", destroy_delay=0)
    return Response(status_code=200)


# ----------------------------------------------------------------------
# Observer stream
# ----------------------------------------------------------------------


@app.websocket("/ws/events")
async def events_websocket(websocket: WebSocket) -> None:
    """Push observer events (call status, transcript, order updates) to a dashboard."""
    await websocket.accept()
    runtime: AgentRuntime = websocket.app.state.runtime
    queue = runtime.broadcaster.subscribe()
    metrics.event_subscribers += 1

    async def _wait_for_close() -> None:
        while True:
            await websocket.receive_text()

    closer = asyncio.create_task(_wait_for_close())
    try:
        while True:
            getter = asyncio.create_task(queue.get())
            done, _ = await asyncio.wait({getter, closer}, return_when=asyncio.FIRST_COMPLETED)
            if closer in done:
                getter.cancel()
                break
            await websocket.send_text(encode_event(getter.result()).decode("utf-8"))
    except WebSocketDisconnect:
        pass
    finally:
        closer.cancel()
        if closer.done() and not closer.cancelled():
            closer.exception()
        runtime.broadcaster.unsubscribe(queue)
        metrics.event_subscribers -= 1
        logger.info("Event stream closed")


# ----------------------------------------------------------------------
# Error handling
# ----------------------------------------------------------------------


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError) -> JSONResponse:
    return JSONResponse(status_code=404, content={"error": str(exc), "callId": exc.call_id})


@app.exception_handler(CarrierError)
async def carrier_error_handler(request: Request, exc: CarrierError) -> JSONResponse:
    logger.error("Carrier error", path=request.url.path, error=str(exc), code=exc.code)
    metrics.errors += 1
    return JSONResponse(
        status_code=502,
        content={
            "error": "Carrier request failed",
            "details": str(exc),
            "code": exc.code,
            "moreInfo": exc.more_info,
        },
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Global exception handler."""
    logger.error(
        "Unhandled exception",
        path=request.url.path,
        error=str(exc),
    )
    metrics.errors += 1

    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error"},
    )


def main() -> None:
    """Run the server."""
    config = get_config()
    configure_logging(config.log_level)

    logger.info("Starting server", port=config.port)

    uvicorn.run(
        "server.app:app",
        host="0.0.0.0",
        port=config.port,
        log_level=config.log_level.lower(),
        reload=False,
    )


if __name__ == "__main__":
    main()
