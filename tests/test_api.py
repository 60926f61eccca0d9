import asyncio

import pytest
from fastapi.testclient import TestClient

from fakestream.config import Settings
from fakestream.dispatcher import Dispatch
from fakestream.emulator import FakeStreamEmulator, SessionState
from fakestream.errors import UpstreamError
from fakestream.heartbeat import COMMENT_FRAME
from fakestream.main import create_app, stream_response
from tests.helpers import FakeUpstream, completion, parse_frames, split_stream

MESSAGES = [{"role": "user", "content": "hi"}]


def make_client(settings, upstream):
    return TestClient(create_app(settings, upstream=upstream))


@pytest.mark.parametrize("path", ["/v1/chat/completions", "/api/chat"])
def test_passthrough_forwards_upstream_json(settings, path):
    body = completion("full answer", id="chatcmpl-1")
    upstream = FakeUpstream(body=body)
    response = make_client(settings, upstream).post(path, json={"model": "m", "messages": MESSAGES})

    assert response.status_code == 200
    assert response.json() == body
    assert upstream.calls[0]["body"]["stream"] is False
    assert upstream.calls[0]["credential"] == "sk-server"


def test_passthrough_forwards_upstream_error(settings):
    error_body = {"error": {"message": "rate limited", "type": "rate_limit_error"}}
    upstream = FakeUpstream(error=UpstreamError(429, error_body))
    response = make_client(settings, upstream).post("/v1/chat/completions", json={"messages": MESSAGES})

    assert response.status_code == 429
    assert response.json() == error_body


def test_passthrough_network_failure(settings):
    upstream = FakeUpstream(error=UpstreamError(502, {"error": {"message": "down", "type": "upstream_error"}}))
    response = make_client(settings, upstream).post("/v1/chat/completions", json={"messages": MESSAGES})
    assert response.status_code == 502
    assert response.json()["error"]["type"] == "upstream_error"


def test_stream_request_is_emulated(settings):
    upstream = FakeUpstream(body=completion("hello world foo"))
    response = make_client(settings, upstream).post(
        "/v1/chat/completions", json={"model": "m", "messages": MESSAGES, "stream": True},
        headers={"Authorization": "Bearer sk-client"},
    )

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    assert response.headers["cache-control"] == "no-cache"
    payloads = [p for p in parse_frames(split_stream(response.text)) if p is not None]
    assert [p["choices"][0]["delta"] for p in payloads[:3]] == [
        {"content": "hello world "}, {"content": "foo"}, {},
    ]
    assert payloads[2]["choices"][0]["finish_reason"] == "stop"
    assert payloads[3] == "[DONE]"
    assert upstream.calls[0]["body"]["stream"] is False
    assert upstream.calls[0]["credential"] == "sk-client"


def test_stream_upstream_error_is_in_stream(settings):
    upstream = FakeUpstream(error=UpstreamError(503, {"error": {"message": "overloaded"}}))
    response = make_client(settings, upstream).post(
        "/v1/chat/completions", json={"messages": MESSAGES, "stream": True},
    )

    assert response.status_code == 200
    payloads = [p for p in parse_frames(split_stream(response.text)) if p is not None]
    assert payloads[0]["error"]["message"] == "overloaded"
    assert payloads[-1] == "[DONE]"
    assert len(payloads) == 2


def test_passthrough_never_starts_heartbeat_or_chunker(settings, monkeypatch):
    started = []
    monkeypatch.setattr("fakestream.emulator.Heartbeat.start", lambda self: started.append(self))
    upstream = FakeUpstream(body=completion("a b"), delay=0.05)
    client = make_client(settings, upstream)
    client.app.state.emulator.chunker = lambda *args: started.append(args)

    response = client.post("/v1/chat/completions", json={"messages": MESSAGES})

    assert response.status_code == 200
    assert response.json() == completion("a b")
    assert started == []


def test_missing_messages_is_400_without_upstream_call(settings):
    upstream = FakeUpstream(body=completion())
    response = make_client(settings, upstream).post("/v1/chat/completions", json={"model": "m"})

    assert response.status_code == 400
    assert response.json()["error"]["type"] == "invalid_request_error"
    assert upstream.calls == []


def test_invalid_json_is_400(settings):
    response = make_client(settings, FakeUpstream()).post(
        "/v1/chat/completions", content=b"{not json", headers={"Content-Type": "application/json"},
    )
    assert response.status_code == 400
    assert response.json()["error"]["type"] == "invalid_request_error"


@pytest.mark.parametrize("stream", [True, False])
def test_missing_credential_is_500(stream):
    upstream = FakeUpstream(body=completion())
    client = make_client(Settings(api_key=None, chunk_delay=0), upstream)
    response = client.post("/v1/chat/completions", json={"messages": MESSAGES, "stream": stream})

    assert response.status_code == 500
    assert response.json()["error"]["type"] == "server_error"
    assert upstream.calls == []


@pytest.mark.parametrize("method", ["get", "put", "patch", "delete"])
def test_other_methods_are_405(settings, method):
    response = getattr(make_client(settings, FakeUpstream()), method)("/v1/chat/completions")
    assert response.status_code == 405
    assert response.json() == {"error": "Method not allowed"}


def test_options_is_200_empty(settings):
    response = make_client(settings, FakeUpstream()).options("/v1/chat/completions")
    assert response.status_code == 200
    assert response.content == b""


def test_cors_preflight(settings):
    response = make_client(settings, FakeUpstream()).options(
        "/v1/chat/completions",
        headers={"Origin": "https://example.com", "Access-Control-Request-Method": "POST"},
    )
    assert response.status_code == 200
    assert "access-control-allow-origin" in response.headers


def test_status(settings):
    response = make_client(settings, FakeUpstream()).get("/api/status")
    data = response.json()
    assert response.status_code == 200
    assert data["status"] == "ok"
    assert data["environment"] == {"has_api_key": True, "source_api_url": "http://upstream.test"}


def test_health(settings):
    assert make_client(settings, FakeUpstream()).get("/health").json() == {"status": "ok"}


def test_universal_proxy_emulates_streaming_chat(settings):
    upstream = FakeUpstream(body=completion("x y z"))
    response = make_client(settings, upstream).post(
        "/proxy/v1/chat/completions?address=https://other.example.com",
        json={"model": "m", "messages": MESSAGES, "stream": True},
        headers={"Authorization": "Bearer sk-client"},
    )

    assert response.headers["content-type"].startswith("text/event-stream")
    payloads = [p for p in parse_frames(split_stream(response.text)) if p is not None]
    assert payloads[-1] == "[DONE]"
    call = upstream.calls[0]
    assert call["url"] == "https://other.example.com/v1/chat/completions"
    assert call["credential"] == "sk-client"
    assert call["body"]["stream"] is False


def test_universal_proxy_passthrough(settings):
    upstream = FakeUpstream()
    response = make_client(settings, upstream).get(
        "/proxy/v1/models?address=https://other.example.com",
        headers={"X-Custom": "1"},
    )

    assert response.status_code == 200
    assert response.content == b"passthrough"
    forwarded = upstream.forwarded[0]
    assert forwarded["method"] == "GET"
    assert forwarded["url"] == "https://other.example.com/v1/models"
    assert forwarded["headers"]["x-custom"] == "1"
    assert "host" not in forwarded["headers"]
    assert upstream.calls == []


def test_universal_proxy_requires_address(settings):
    response = make_client(settings, FakeUpstream()).post("/proxy/v1/chat/completions", json={})
    assert response.status_code == 400
    assert response.json()["error"]["type"] == "invalid_request_error"


def test_universal_proxy_forwards_client_headers(settings):
    upstream = FakeUpstream(body=completion("x"))
    make_client(settings, upstream).post(
        "/proxy/openai/deployments/gpt/chat/completions?address=https://azure.example.com",
        json={"messages": MESSAGES, "stream": True},
        headers={"api-key": "azure-key", "OpenAI-Organization": "org-1"},
    )

    call = upstream.calls[0]
    assert call["credential"] is None
    assert call["headers"]["api-key"] == "azure-key"
    assert call["headers"]["openai-organization"] == "org-1"
    assert "host" not in call["headers"]
    assert "content-length" not in call["headers"]


def test_root_reports_running(settings):
    response = make_client(settings, FakeUpstream()).get("/")
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/plain")
    assert "running" in response.text


def test_client_disconnect_cancels_emulation(settings):
    dispatch = Dispatch(stream=True, body={"model": "m", "messages": MESSAGES, "stream": False},
                        credential="sk-server")

    async def scenario():
        upstream = FakeUpstream(body=completion(), delay=10)
        emulator = FakeStreamEmulator(upstream, settings)
        sessions, stops, tasks = [], [], []
        open_session = emulator.open_session
        run = emulator.run

        def tracking_open_session(writer, cancel=None):
            session = open_session(writer, cancel)
            original_stop = session.heartbeat.stop

            def counting_stop():
                stops.append(1)
                original_stop()

            session.heartbeat.stop = counting_stop
            sessions.append(session)
            return session

        async def tracking_run(*args):
            tasks.append(asyncio.current_task())
            return await run(*args)

        emulator.open_session = tracking_open_session
        emulator.run = tracking_run

        frames = stream_response(emulator, dispatch).body_iterator
        first = await frames.__anext__()
        await frames.aclose()
        await asyncio.sleep(0.01)

        session = sessions[0]
        ticks = session.heartbeat.ticks
        await asyncio.sleep(0.03)
        leftover = [t for t in asyncio.all_tasks() if t is not asyncio.current_task()]
        return first, session, stops, ticks, leftover, upstream, tasks[0]

    first, session, stops, ticks, leftover, upstream, task = asyncio.run(scenario())
    assert first == COMMENT_FRAME
    assert task.cancelled()
    assert leftover == []
    assert session.state is SessionState.ABORTED
    assert stops == [1]
    assert not session.heartbeat.running
    assert session.heartbeat.ticks == ticks
    assert session.writer.closed
    assert len(upstream.calls) == 1
