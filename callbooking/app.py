"""FastAPI application: the call session gateway.

Endpoints:

  POST /lead                       CRM webhook: validate the lead, place the outbound call
  POST /call/answered              Twilio voice webhook: opening prompt + Gather
  POST /call/utterance             Twilio Gather action: next prompt (or hangup)
  POST /call/status                Twilio status callback: tear down finished calls
  GET  /speech-audio?text=...      Synthesized prompt audio (content-addressed cache)
  GET  /health, GET /              Liveness

  GET  /api/calls                  Active calls (admin)
  GET  /api/calls/{call_sid}       One call in detail (admin)
  WS   /api/calls/{call_sid}/debug Live call trace (admin)

The call flow:
  1. The CRM posts a lead to /lead; we ask Twilio to dial it, passing the lead
     fields back to ourselves in the answer URL's query string
  2. On answer, Twilio fetches /call/answered; we create a CallSession and
     return the opening prompt inside a speech <Gather>
  3. Each Gather result hits /call/utterance; the session advances one step
  4. A terminal prompt ends with <Hangup/> and the session is dropped
"""

from __future__ import annotations

# Load .env into os.environ before anything reads configuration
from dotenv import load_dotenv
load_dotenv()

import logging
import time
from contextlib import asynccontextmanager
from urllib.parse import urlencode

# Configure root logger early so all callbooking loggers have a handler
# when run via `uvicorn callbooking.app:app`.
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(name)-20s %(levelname)-7s %(message)s",
)

from fastapi import Depends, FastAPI, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse, PlainTextResponse, Response

from callbooking.auth import require_admin_token, require_admin_ws
from callbooking.availability import AvailabilityResolver, InMemoryReservationLedger
from callbooking.config import settings
from callbooking.debug_events import find_broadcaster, get_broadcaster, remove_broadcaster
from callbooking.llm import ClaudeReplyStrategy, ReplyStrategy
from callbooking.models.lead import LeadValidationError, clean_text, normalize_lead
from callbooking.notifier import BookingNotifier
from callbooking.prompts import render_prompt
from callbooking.session import (
    CallSession,
    Turn,
    get_active_sessions,
    get_session,
    redact_pii,
    register_session,
    unregister_session,
)
from callbooking.telephony import TelephonyClient, TelephonyConfigError, TelephonyError, TwilioClient
from callbooking.tts import AudioCache, ElevenLabsSynthesizer, SpeechSynthesisError, VoiceSettings
from callbooking.workflows.schema import ConversationWorkflowDef
from callbooking.workflows.site_survey import WORKFLOW_DEF

log = logging.getLogger("callbooking.app")

_START_TIME = time.time()

# Twilio CallStatus values after which no more callbacks arrive
TERMINAL_CALL_STATUSES = frozenset({"completed", "busy", "failed", "no-answer", "canceled"})


def create_app(
    telephony: TelephonyClient | None = None,
    resolver: AvailabilityResolver | None = None,
    notifier: BookingNotifier | None = None,
    audio_cache: AudioCache | None = None,
    reply_strategy: ReplyStrategy | None = None,
    workflow: ConversationWorkflowDef | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Collaborators default to the ones configured in ``settings``; tests pass
    their own.
    """
    notifier = notifier or _create_notifier()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        for warning in settings.validate_startup():
            log.warning(warning)
        log.info(
            "Call gateway ready at %s (mode: %s)", settings.base_url, settings.conversation_mode,
        )
        yield
        await notifier.drain()

    app = FastAPI(
        title="Site Survey Call Booking",
        description="Outbound calls that book site surveys from CRM leads",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.telephony = telephony or _create_telephony()
    app.state.resolver = resolver or _create_resolver()
    app.state.notifier = notifier
    app.state.audio_cache = audio_cache or _create_audio_cache()
    app.state.reply_strategy = reply_strategy if reply_strategy is not None else _create_reply_strategy()
    app.state.workflow = workflow or WORKFLOW_DEF

    async def twiml(turn: Turn) -> Response:
        use_audio = await app.state.audio_cache.warm(turn.prompt)
        content = render_prompt(
            turn.prompt,
            settings.base_url,
            hangup=turn.hangup,
            use_audio=use_audio,
            gather_timeout=settings.gather_timeout,
        )
        return Response(content=content, media_type="application/xml")

    def goodbye() -> Turn:
        return Turn(app.state.workflow.goodbye_message, hangup=True)

    def fallback() -> Turn:
        return Turn(app.state.workflow.fallback_message, hangup=True)

    # ── Health check ───────────────────────────────────────────

    @app.get("/health")
    async def health() -> JSONResponse:
        uptime = round(time.time() - _START_TIME, 1)
        return JSONResponse({
            "ok": True,
            "status": "ok",
            "uptime": uptime,
            "active_calls": len(get_active_sessions()),
        })

    @app.get("/", response_class=PlainTextResponse)
    async def index() -> str:
        return f"OK - {settings.company_name} outbound caller running"

    # ── CRM lead webhook ───────────────────────────────────────

    @app.post("/lead")
    async def lead_webhook(request: Request) -> JSONResponse:
        """Validate an inbound lead and place the outbound call."""
        try:
            payload = await request.json()
        except ValueError:
            return JSONResponse({"ok": False, "error": "Body must be JSON"}, status_code=400)
        if not isinstance(payload, dict):
            return JSONResponse({"ok": False, "error": "Body must be a JSON object"}, status_code=400)

        try:
            lead = normalize_lead(payload)
        except LeadValidationError as e:
            log.warning("Rejected lead: %s (got %s)", e, redact_pii(str(e.got or "")))
            return JSONResponse(
                {"ok": False, "error": str(e), "got": e.got}, status_code=400,
            )

        base = settings.base_url
        answer_url = f"{base}/call/answered?{urlencode(lead.to_query())}"
        status_url = f"{base}/call/status"

        try:
            call = await app.state.telephony.place_call(lead.phone, answer_url, status_url)
        except TelephonyConfigError as e:
            log.error("Cannot place call: %s", e)
            return JSONResponse({"ok": False, "error": str(e)}, status_code=500)
        except TelephonyError as e:
            log.error("Carrier rejected call to %s: %s", redact_pii(lead.phone), e)
            return JSONResponse({"ok": False, "error": str(e)}, status_code=502)

        log.info("Call %s triggered for lead %s", call.sid, redact_pii(lead.phone))
        return JSONResponse({"ok": True, "message": "Call triggered", "callId": call.sid})

    # ── Twilio call webhooks ───────────────────────────────────

    @app.post("/call/answered")
    async def call_answered(request: Request) -> Response:
        """Twilio voice webhook: the lead picked up."""
        form = await request.form()
        call_sid = str(form.get("CallSid", ""))

        existing = get_session(call_sid)
        if existing is not None:
            log.warning("Repeated answer callback for call %s", call_sid)
            return await twiml(existing.repeat_prompt())

        lead_fields = dict(request.query_params)
        lead_fields.setdefault("phone", str(form.get("To", "")))
        try:
            lead = normalize_lead(lead_fields)
        except LeadValidationError as e:
            log.error("Answered call %s has no usable lead: %s", call_sid, e)
            return await twiml(fallback())
        if not call_sid:
            log.error("Answer callback without CallSid")
            return await twiml(fallback())

        session = CallSession(
            lead,
            resolver=app.state.resolver,
            notifier=app.state.notifier,
            workflow=app.state.workflow,
            reply_strategy=app.state.reply_strategy,
        )
        session.start(call_sid)
        register_session(session)
        session.attach_broadcaster(get_broadcaster(call_sid))
        return await twiml(session.get_greeting())

    @app.post("/call/utterance")
    async def call_utterance(request: Request) -> Response:
        """Twilio Gather action: one speech result (possibly empty)."""
        form = await request.form()
        call_sid = str(form.get("CallSid", ""))
        speech = str(form.get("SpeechResult", ""))
        confidence = _parse_confidence(form.get("Confidence"))

        session = get_session(call_sid)
        if session is None:
            log.warning("Utterance for unknown or finished call %s", call_sid)
            return await twiml(goodbye())

        try:
            turn = await session.handle_utterance(speech, confidence)
        except Exception:
            log.exception("Unhandled error on call %s", call_sid)
            session.close("error")
            turn = fallback()

        if turn.hangup:
            _end_session(call_sid)
        return await twiml(turn)

    @app.post("/call/status", response_class=PlainTextResponse)
    async def call_status(request: Request) -> str:
        """Twilio status callback: log, and drop sessions for ended calls."""
        form = await request.form()
        call_sid = str(form.get("CallSid", ""))
        status = str(form.get("CallStatus", ""))
        log.info(
            "Call status: sid=%s status=%s to=%s duration=%s",
            call_sid, status, redact_pii(str(form.get("To", ""))), form.get("CallDuration", ""),
        )

        if status in TERMINAL_CALL_STATUSES:
            session = _end_session(call_sid)
            if session is not None:
                session.close("hangup")
        return "ok"

    # ── Prompt audio ───────────────────────────────────────────

    @app.get("/speech-audio")
    async def speech_audio(text: str = Query(default="")) -> Response:
        """Synthesized audio for one prompt; Twilio fetches this from <Play>."""
        text = clean_text(text, 700)
        if not text:
            return PlainTextResponse("Missing text", status_code=400)
        try:
            audio = await app.state.audio_cache.get_audio(text)
        except SpeechSynthesisError as e:
            log.error("Speech audio failed: %s", e)
            return PlainTextResponse("TTS failed", status_code=502)
        return Response(
            content=audio,
            media_type=app.state.audio_cache.synthesizer.content_type,
            headers={"Cache-Control": "public, max-age=86400"},
        )

    # ── Admin: active calls and live trace ─────────────────────

    @app.get("/api/calls", dependencies=[Depends(require_admin_token)])
    async def list_calls() -> JSONResponse:
        sessions = get_active_sessions()
        return JSONResponse({
            "calls": [s.to_dict() for s in sessions.values()],
            "count": len(sessions),
        })

    @app.get("/api/calls/{call_sid}", dependencies=[Depends(require_admin_token)])
    async def get_call(call_sid: str) -> JSONResponse:
        session = get_session(call_sid)
        if not session:
            return JSONResponse({"error": "Call not found"}, status_code=404)
        return JSONResponse(session.to_dict(detail=True))

    @app.websocket("/api/calls/{call_sid}/debug", dependencies=[Depends(require_admin_ws)])
    async def call_trace(websocket: WebSocket, call_sid: str) -> None:
        """Stream a call's events as they happen."""
        broadcaster = find_broadcaster(call_sid)
        if broadcaster is None:
            await websocket.close(code=4004, reason="Call not found")
            return

        await websocket.accept()
        queue = broadcaster.subscribe()
        try:
            while True:
                event = await queue.get()
                await websocket.send_json(event)
        except WebSocketDisconnect:
            pass
        finally:
            broadcaster.unsubscribe(queue)
            if get_session(call_sid) is None:
                remove_broadcaster(call_sid)

    return app


# ── Helper functions ──────────────────────────────────────────────

def _end_session(call_sid: str) -> CallSession | None:
    session = unregister_session(call_sid)
    remove_broadcaster(call_sid)
    return session


def _parse_confidence(value) -> float | None:
    if value in (None, ""):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _create_telephony() -> TelephonyClient:
    return TwilioClient(
        account_sid=settings.twilio_account_sid,
        auth_token=settings.twilio_auth_token,
        from_number=settings.twilio_from_number,
    )


def _create_resolver() -> AvailabilityResolver:
    return AvailabilityResolver(
        InMemoryReservationLedger(),
        capacity=settings.slot_capacity,
        lookahead_days=settings.lookahead_days,
        window_fallback=settings.window_fallback,
        timezone=settings.calendar_timezone,
    )


def _create_notifier() -> BookingNotifier:
    return BookingNotifier(settings.crm_webhook_url, timeout=settings.crm_timeout_seconds)


def _create_audio_cache() -> AudioCache:
    synthesizer = ElevenLabsSynthesizer(
        api_key=settings.elevenlabs_api_key,
        voice_id=settings.elevenlabs_voice_id,
        base_url=settings.elevenlabs_url,
        voice=VoiceSettings(
            stability=settings.tts_stability,
            similarity_boost=settings.tts_similarity_boost,
            style=settings.tts_style,
        ),
        timeout=settings.tts_timeout_seconds,
    )
    return AudioCache(
        synthesizer,
        max_entries=settings.tts_cache_size,
        warm_timeout=settings.tts_timeout_seconds,
    )


def _create_reply_strategy() -> ReplyStrategy | None:
    """Claude-backed replies in LLM mode; None keeps the call rules-only."""
    if not settings.llm_enabled:
        return None
    if settings.llm_provider != "claude":
        log.warning("LLM provider %r not supported; using rules only", settings.llm_provider)
        return None
    return ClaudeReplyStrategy(
        api_key=settings.anthropic_api_key,
        model=settings.llm_model,
        timeout=settings.llm_timeout_seconds,
    )


# ── Module-level app instance for uvicorn ──────────────────────

app = create_app()


if __name__ == "__main__":
    import uvicorn

    log_config = uvicorn.config.LOGGING_CONFIG
    log_config["formatters"]["default"]["fmt"] = (
        "%(asctime)s %(name)-12s %(levelname)-8s %(message)s"
    )

    uvicorn.run(
        "callbooking.app:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_config=log_config,
    )
