"""
Call trainer service.

One aiohttp application serves the start-call API, the TwiML the carrier
fetches on answer, the carrier media-stream websocket, stored analyses, and
health/metrics. All sessions live on this process's event loop.
"""

import asyncio
import os
import signal
from typing import Any, Callable, Coroutine, Optional, Set

import aiohttp
from aiohttp import web, WSMsgType
from dotenv import load_dotenv
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from call_trainer.config import AppConfig, DEFAULT_CONFIG_PATH, load_config, validate_production_config
from call_trainer.core.analysis_store import AnalysisStore
from call_trainer.core.call_session import BridgeFactory, CallSession, SessionDeps
from call_trainer.core.models import ScenarioContext
from call_trainer.core.registry import SessionRegistry
from call_trainer.analysis.grader import TranscriptGrader
from call_trainer.analysis.publisher import ResultPublisher
from call_trainer.errors import ProtocolError, UpstreamAuthError, UpstreamUnavailableError, ValidationError
from call_trainer.logging_config import configure_logging, get_logger, set_correlation_id
from call_trainer.metrics import AUDIO_FRAMES_DROPPED
from call_trainer.providers.elevenlabs_agent import SignedUrlRequester
from call_trainer.telephony.media_stream import StreamMedia, StreamStart, TelephonyLeg, parse_frame
from call_trainer.telephony.twilio_client import TwilioClient
from call_trainer.telephony.twiml import (
    build_stream_twiml,
    http_base_url,
    twiml_callback_url,
    websocket_base_url,
)

logger = get_logger(__name__)

SHUTDOWN_GRACE_SEC = 30.0


class Engine:
    """Owns the HTTP surface, the session registry and the shared clients."""

    def __init__(
        self,
        config: AppConfig,
        *,
        session_factory: Optional[Callable[[], aiohttp.ClientSession]] = None,
        bridge_factory: Optional[BridgeFactory] = None,
    ):
        self.config = config
        self.registry = SessionRegistry(pending_ttl_sec=config.sessions.pending_dial_ttl_sec)
        self.twilio = TwilioClient(config.twilio, session_factory=session_factory)
        self.signed_urls = SignedUrlRequester(config.voice_agent, session_factory=session_factory)
        self.grader = TranscriptGrader(config.grading, session_factory=session_factory)
        self.publisher = ResultPublisher(config.results, session_factory=session_factory)
        self.store = AnalysisStore(config.analysis_store.db_path, enabled=config.analysis_store.enabled)
        self.deps = SessionDeps(
            voice_config=config.voice_agent,
            signed_urls=self.signed_urls,
            grader=self.grader,
            publisher=self.publisher,
            store=self.store,
            bridge_factory=bridge_factory,
            spawn=self._spawn,
        )

        self._background_tasks: Set[asyncio.Task] = set()
        self._runner: Optional[web.AppRunner] = None
        self.app = self.build_app()

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get('/', self._root_handler)
        app.router.add_get('/health', self._health_handler)
        app.router.add_get('/metrics', self._metrics_handler)
        app.router.add_post('/outbound-call', self._outbound_call_handler)
        app.router.add_route('*', '/outbound-call-twiml', self._twiml_handler)
        app.router.add_get(self.config.server.media_stream_path, self._media_stream_handler)
        app.router.add_get('/analysis/{call_id}', self._analysis_handler)
        return app

    async def start(self) -> None:
        runner = web.AppRunner(self.app)
        await runner.setup()
        site = web.TCPSite(runner, self.config.server.host, self.config.server.port)
        await site.start()
        self._runner = runner
        logger.info(
            "Call trainer listening",
            host=self.config.server.host,
            port=self.config.server.port,
            public_base_url=self.config.server.public_base_url,
        )

    async def stop(self) -> None:
        """Close websockets (which ends their sessions), then drain grading."""
        logger.info("Stopping call trainer", active_sessions=self.registry.active_count)
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
        await self.wait_background(timeout=SHUTDOWN_GRACE_SEC)
        await self.close_clients()

    async def close_clients(self) -> None:
        for client in (self.twilio, self.signed_urls, self.grader, self.publisher):
            await client.close()

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> "asyncio.Task[None]":
        task = asyncio.create_task(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        return task

    async def wait_background(self, timeout: Optional[float] = None) -> None:
        """Wait for in-flight grading/publishing to finish."""
        pending = set(self._background_tasks)
        if not pending:
            return
        logger.info("Waiting for post-call processing", tasks=len(pending))
        _, still_pending = await asyncio.wait(pending, timeout=timeout)
        for task in still_pending:
            logger.warning("Cancelling post-call task at shutdown", task=task.get_name())
            task.cancel()

    def _on_session_finished(self, session: CallSession) -> None:
        self.registry.remove(session.stream_id)
        logger.info(
            "Session closed",
            call_id=session.call_id,
            stream_id=session.stream_id,
            state=session.state.value,
            active_sessions=self.registry.active_count,
        )

    def _new_session(self, scenario: ScenarioContext) -> CallSession:
        return CallSession(scenario, self.deps, on_finished=self._on_session_finished)

    # ------------------------------------------------------------------
    # HTTP handlers
    # ------------------------------------------------------------------

    async def _root_handler(self, request: web.Request) -> web.Response:
        return web.json_response({"message": "Server is running"})

    async def _health_handler(self, request: web.Request) -> web.Response:
        return web.json_response({
            "status": "healthy",
            "active_sessions": self.registry.active_count,
            "pending_dials": self.registry.pending_count,
            "grading_tasks": len(self._background_tasks),
            "analysis_store": self.store.enabled,
        })

    async def _metrics_handler(self, request: web.Request) -> web.Response:
        """Expose Prometheus metrics."""
        data = generate_latest()
        # aiohttp forbids 'charset=' inside content_type arg; pass full header via headers.
        return web.Response(body=data, headers={"Content-Type": CONTENT_TYPE_LATEST})

    async def _outbound_call_handler(self, request: web.Request) -> web.Response:
        try:
            body = await request.json()
        except ValueError:
            body = None
        try:
            scenario = ScenarioContext.from_request(body)
        except ValidationError as e:
            return web.json_response({"error": str(e)}, status=400)

        base_url = http_base_url(self.config.server.public_base_url, request.host)
        twiml_url = twiml_callback_url(base_url, scenario.to_stream_parameters())
        session = self._new_session(scenario)

        try:
            call_id = await session.dial(self.twilio, twiml_url)
        except (UpstreamAuthError, UpstreamUnavailableError) as e:
            logger.error("Error initiating outbound call", error=str(e), status=e.status)
            return web.json_response(
                {"success": False, "error": "Failed to initiate call", "detail": str(e)},
                status=500,
            )

        self.registry.add_pending(call_id, session)
        return web.json_response({"success": True, "message": "Call initiated", "callId": call_id})

    async def _twiml_handler(self, request: web.Request) -> web.Response:
        params = {
            "prompt": request.query.get("prompt", ""),
            "first_message": request.query.get("first_message", ""),
            "scenarioId": request.query.get("scenarioId", ""),
        }
        ws_base = websocket_base_url(self.config.server.public_base_url, request.host)
        stream_url = f"{ws_base}{self.config.server.media_stream_path}"
        logger.debug("Serving TwiML", stream_url=stream_url, scenario_id=params["scenarioId"])
        return web.Response(text=build_stream_twiml(stream_url, params), content_type="text/xml")

    async def _analysis_handler(self, request: web.Request) -> web.Response:
        call_id = request.match_info["call_id"]
        record = await self.store.get_latest(call_id)
        if record is None:
            return web.json_response({"error": "Analysis not found"}, status=404)
        return web.json_response(record.to_dict())

    async def _media_stream_handler(self, request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse()
        await ws.prepare(request)
        logger.info("Media stream client connected", remote=request.remote)

        leg = TelephonyLeg(ws.send_json)
        session: Optional[CallSession] = None
        try:
            async for msg in ws:
                if msg.type == WSMsgType.ERROR:
                    logger.warning("Media stream websocket error", error=str(ws.exception()))
                    break
                if msg.type != WSMsgType.TEXT:
                    continue
                try:
                    event = parse_frame(msg.data)
                except ProtocolError as e:
                    logger.debug("Ignoring media stream frame", reason=str(e))
                    continue

                if session is None:
                    if not isinstance(event, StreamStart):
                        if isinstance(event, StreamMedia):
                            AUDIO_FRAMES_DROPPED.labels(direction="to_voice_ai").inc()
                        continue
                    session = self._session_for_stream(event, leg)
                await session.handle_event(event)
        finally:
            leg.mark_closed()
            if session is not None:
                await session.on_telephony_closed()
            logger.info("Media stream client disconnected", call_id=session.call_id if session else None)
        return ws

    def _session_for_stream(self, event: StreamStart, leg: TelephonyLeg) -> CallSession:
        set_correlation_id(event.call_sid)
        session = self.registry.claim_pending(event.call_sid)
        if session is None:
            logger.info(
                "Stream for a call not dialled by this process",
                call_id=event.call_sid,
                stream_id=event.stream_sid,
            )
            session = self._new_session(ScenarioContext.from_stream_parameters(event.custom_parameters))
        session.attach_telephony(leg)
        self.registry.register(event.stream_sid, session)
        return session


async def main():
    load_dotenv()
    config = load_config(os.getenv("CALL_TRAINER_CONFIG", DEFAULT_CONFIG_PATH))
    configure_logging(log_level=config.logging.level.upper())

    errors, warnings = validate_production_config(config)
    if errors:
        logger.error("Configuration validation FAILED", errors=errors, warnings=warnings)
        raise RuntimeError(f"Configuration errors: {errors}")
    if warnings:
        logger.warning("Configuration warnings", warnings=warnings)
    logger.info("Configuration validation passed")

    engine = Engine(config)

    shutdown_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, shutdown_event.set)

    await engine.start()
    await shutdown_event.wait()
    await engine.stop()


def run() -> None:
    try:
        asyncio.run(main())
    except (KeyboardInterrupt, SystemExit):
        pass
    finally:
        logger.info("Call trainer has shut down.")


if __name__ == "__main__":
    run()
