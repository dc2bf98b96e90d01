"""
Shared fixtures.

FakeUpstream is a single aiohttp app standing in for every external service
the trainer talks to: the Twilio Calls API, ElevenLabs signed-URL issuance
and agent websocket, the OpenAI chat completions endpoint, and the analysis
storage endpoint. Point the config base URLs at ``upstream.base_url``.
"""

import asyncio
import copy
import json
from typing import Any, Dict, List, Optional

import pytest
from aiohttp import web, WSMsgType, test_utils


PASSING_ANALYSIS = {
    "scenario": "Cardiac arrest at home",
    "overall_rating": {"score": 8, "summary": "Calm and structured call handling"},
    "strengths": ["Confirmed the address early", "Started CPR instructions promptly"],
    "areas_for_improvement": ["Ask about medications"],
    "information_handling": {
        "gathered_correctly": ["Address", "Patient breathing status"],
        "missed_or_incorrect": [],
    },
    "action_assessment": {
        "appropriate_actions": ["Dispatched ambulance"],
        "inappropriate_actions": [],
    },
    "efficiency": {"response_time_rating": 9, "comments": "Quick triage"},
    "final_recommendation": "Ready for supervised live calls.",
    "pass_fail": "PASS",
}


class FakeUpstream:
    def __init__(self) -> None:
        self.base_url = ""

        # Twilio
        self.calls: List[Dict[str, str]] = []
        self.call_auth: List[Optional[str]] = []
        self.twilio_status = 201
        self.twilio_body: Dict[str, Any] = {"sid": "CA123", "status": "queued"}

        # ElevenLabs
        self.signed_url_requests: List[Dict[str, Optional[str]]] = []
        self.signed_url_status = 200
        self.agent_connections = 0
        self.agent_received: List[Dict[str, Any]] = []
        self.audio_chunks = 0

        # OpenAI
        self.grading_requests: List[Dict[str, Any]] = []
        self.grading_status = 200
        self.grading_content = json.dumps(PASSING_ANALYSIS)

        # Storage endpoint
        self.published: List[Dict[str, Any]] = []
        self.publish_status = 200

        self.app = web.Application()
        self.app.router.add_post('/2010-04-01/Accounts/{sid}/Calls.json', self._create_call)
        self.app.router.add_get('/v1/convai/conversation/get_signed_url', self._signed_url)
        self.app.router.add_get('/convai', self._convai)
        self.app.router.add_post('/v1/chat/completions', self._chat_completions)
        self.app.router.add_post('/api/analysis', self._analysis)

    async def _create_call(self, request: web.Request) -> web.Response:
        form = await request.post()
        self.calls.append({k: str(v) for k, v in form.items()})
        self.call_auth.append(request.headers.get("Authorization"))
        return web.json_response(self.twilio_body, status=self.twilio_status)

    async def _signed_url(self, request: web.Request) -> web.Response:
        agent_id = request.query.get("agent_id")
        self.signed_url_requests.append({
            "agent_id": agent_id,
            "api_key": request.headers.get("xi-api-key"),
        })
        if self.signed_url_status != 200:
            return web.json_response({"detail": "invalid api key"}, status=self.signed_url_status)
        ws_base = self.base_url.replace("http://", "ws://")
        return web.json_response({"signed_url": f"{ws_base}/convai?agent_id={agent_id}"})

    async def _convai(self, request: web.Request) -> web.WebSocketResponse:
        """Scripted agent: greets after the handshake, answers the second audio chunk."""
        ws = web.WebSocketResponse()
        await ws.prepare(request)
        self.agent_connections += 1
        async for msg in ws:
            if msg.type != WSMsgType.TEXT:
                continue
            data = json.loads(msg.data)
            self.agent_received.append(data)
            if data.get("type") == "conversation_initiation_client_data":
                await ws.send_json({
                    "type": "conversation_initiation_metadata",
                    "conversation_initiation_metadata_event": {"conversation_id": "conv_1"},
                })
                await ws.send_json({"type": "ping", "ping_event": {"event_id": 7}})
                await ws.send_json({
                    "type": "agent_response",
                    "agent_response_event": {"agent_response": "My husband collapsed!"},
                })
                await ws.send_json({"type": "audio", "audio_event": {"audio_base_64": "AAAA"}})
            elif "user_audio_chunk" in data:
                self.audio_chunks += 1
                if self.audio_chunks == 2:
                    await ws.send_json({
                        "type": "user_transcript",
                        "user_transcription_event": {"user_transcript": "Ambulance, what is the address?"},
                    })
                    await ws.send_json({"type": "audio", "audio": {"chunk": "BBBB"}})
        return ws

    async def _chat_completions(self, request: web.Request) -> web.Response:
        self.grading_requests.append(await request.json())
        if self.grading_status != 200:
            return web.json_response({"error": {"message": "boom"}}, status=self.grading_status)
        return web.json_response({
            "choices": [{"message": {"role": "assistant", "content": self.grading_content}}],
        })

    async def _analysis(self, request: web.Request) -> web.Response:
        self.published.append(await request.json())
        return web.json_response({"success": True}, status=self.publish_status)


@pytest.fixture
async def upstream():
    fake = FakeUpstream()
    server = test_utils.TestServer(fake.app)
    await server.start_server()
    fake.base_url = f"http://{server.host}:{server.port}"
    yield fake
    await server.close()


@pytest.fixture
def wait_until():
    async def _wait_until(predicate, timeout: float = 5.0, interval: float = 0.01) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not met before timeout")
            await asyncio.sleep(interval)

    return _wait_until


@pytest.fixture
def passing_analysis():
    return copy.deepcopy(PASSING_ANALYSIS)


class FakeAgentSocket:
    """Stands in for a websockets client connection to the voice AI."""

    def __init__(self):
        self.sent: List[Dict[str, Any]] = []
        self.closed = False
        self._incoming: asyncio.Queue = asyncio.Queue()

    def feed(self, message: Dict[str, Any]) -> None:
        self._incoming.put_nowait(json.dumps(message))

    async def send(self, data: str) -> None:
        self.sent.append(json.loads(data))

    async def close(self) -> None:
        self.closed = True
        self._incoming.put_nowait(None)

    def __aiter__(self):
        return self

    async def __anext__(self) -> str:
        message = await self._incoming.get()
        if message is None:
            raise StopAsyncIteration
        return message


@pytest.fixture
def agent_socket():
    return FakeAgentSocket()
