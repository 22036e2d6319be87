"""
Tests for the HTTP API, the voice webhooks and the event stream.
"""

from dataclasses import replace
import re
import time

import httpx
import pytest
from fastapi.testclient import TestClient

from server.app import app
from src.sales_agent.errors import GenerationError
from src.sales_agent.tts_providers.azure import AzureTTS


@pytest.fixture
def client(runtime):
    app.state.runtime = runtime
    with TestClient(app) as test_client:
        yield test_client
    app.state.runtime = None


def make_call(client, **overrides):
    payload = {
        "phoneNumber": "+15551234567",
        "customerName": "Dana",
        "hotelName": "Harbor Inn",
        "lastProduct": "Asiago Cheese Bagels",
        **overrides,
    }
    response = client.post("/api/make-call", json=payload)
    assert response.status_code == 200
    return response.json()


def test_health_endpoints(client):
    health = client.get("/health").json()
    assert health["status"] == "healthy"
    assert health["active_calls"] == 0

    api_health = client.get("/api/health").json()
    assert api_health["status"] == "OK"
    assert api_health["services"]["tts"] == "FakeSynthesisProvider"
    assert api_health["services"]["stt"] == "CarrierTranscriber"

    metrics = client.get("/metrics").json()
    assert "cache" in metrics
    assert metrics["active_calls"] == 0


def test_make_call(client, runtime, fake_carrier):
    body = make_call(client)

    assert body["success"] is True
    assert body["callId"].startswith("call_")
    assert body["twilioCallSid"].startswith("CA")
    assert body["phoneNumber"] == "+15551234567"
    assert body["fromNumber"] == "+15550001111"

    session = runtime.store.get(body["callId"])
    assert session.profile.manager_name == "Dana"
    assert session.order.venue_name == "Harbor Inn"
    assert len(fake_carrier.placed) == 1


def test_make_call_requires_phone_number(client):
    response = client.post("/api/make-call", json={"context": "hi"})

    assert response.status_code == 400
    assert response.json() == {"error": "Phone number is required"}


def test_make_call_carrier_failure(client, runtime, fake_carrier, carrier_errors):
    fake_carrier.place_error = carrier_errors()

    response = client.post("/api/make-call", json={"phoneNumber": "+1"})

    assert response.status_code == 502
    body = response.json()
    assert body["error"] == "Carrier request failed"
    assert body["code"] == 21211
    assert body["moreInfo"] == "https://www.twilio.com/docs/errors/21211"
    assert len(runtime.store) == 0


def test_voice_conversation_flow(client, runtime):
    call_id = make_call(client)["callId"]

    greeting = client.post(f"/api/voice/incoming?callId={call_id}")
    assert greeting.status_code == 200
    assert greeting.headers["content-type"].startswith("application/xml")
    assert "<Gather" in greeting.text
    assert f"/api/voice/timeout?callId={call_id}</Redirect>" in greeting.text

    match = re.search(r"/audio/(tts_[^<]+)</Play>", greeting.text)
    assert match is not None
    audio = client.get(f"/audio/{match.group(1)}")
    assert audio.status_code == 200
    assert audio.content.startswith(b"ID3")

    reply = client.post(
        f"/api/voice/process-speech?callId={call_id}",
        data={"SpeechResult": "3 cases of coffee please"},
    )
    assert reply.status_code == 200
    assert "<Gather" in reply.text

    order = client.get(f"/api/order/{call_id}").json()
    assert order["orderDetails"]["products"][0]["product"] == "House Blend Coffee"
    assert order["orderDetails"]["total"] == 84.0

    conversation = client.get(f"/api/conversation/{call_id}").json()
    assert [t["role"] for t in conversation["conversation"]] == ["agent", "caller", "agent"]

    calls = client.get("/api/calls").json()["calls"]
    assert [c["callId"] for c in calls] == [call_id]
    assert calls[0]["turnState"] == "listening"


def test_voice_webhook_for_unknown_call_hangs_up(client):
    response = client.post("/api/voice/incoming?callId=call_missing")

    assert response.status_code == 200
    assert "technical difficulties" in response.text
    assert "<Hangup />" in response.text


def test_voice_webhook_error_still_answers_twiml(client, runtime, fake_llm):
    call_id = make_call(client)["callId"]

    async def broken_generate(history, **kwargs):
        raise RuntimeError("unexpected")

    fake_llm.generate = broken_generate

    response = client.post(f"/api/voice/incoming?callId={call_id}")

    assert response.status_code == 200
    assert "technical difficulties" in response.text
    assert "<Hangup />" in response.text


def test_missing_audio_is_404(client):
    assert client.get("/audio/tts_missing.mp3").status_code == 404


def test_status_callback_archives_call(client, runtime):
    body = make_call(client)
    call_id = body["callId"]
    client.post(f"/api/voice/incoming?callId={call_id}")

    response = client.post(
        "/api/voice/status",
        data={"CallSid": body["twilioCallSid"], "CallStatus": "completed"},
    )
    assert response.status_code == 200
    assert runtime.store.get(call_id).is_terminated

    history = client.get("/api/conversation-history").json()
    assert history["totalFiles"] == 1
    filename = history["files"][0]["filename"]

    download = client.get(f"/api/conversation-history/{filename}")
    assert download.status_code == 200
    assert "VOICE AGENT CALL HISTORY" in download.text

    assert client.get("/api/conversation-history/missing.txt").status_code == 404


def test_status_callback_for_unknown_call(client):
    response = client.post("/api/voice/status", data={"CallSid": "CAnope", "CallStatus": "ringing"})

    assert response.status_code == 200


def test_terminate_call(client, runtime, fake_carrier):
    body = make_call(client)
    call_id = body["callId"]

    response = client.post("/api/terminate-call", json={"callId": call_id})

    assert response.status_code == 200
    data = response.json()
    assert data["success"] is True
    assert data["artifactId"].endswith(".txt")
    assert fake_carrier.terminated == [body["twilioCallSid"]]

    missing = client.get(f"/api/conversation/{call_id}")
    assert missing.status_code == 404
    assert missing.json()["callId"] == call_id


def test_terminate_call_errors(client, fake_carrier, carrier_errors):
    assert client.post("/api/terminate-call", json={}).status_code == 400
    assert client.post("/api/terminate-call", json={"callId": "call_missing"}).status_code == 404

    call_id = make_call(client)["callId"]
    fake_carrier.terminate_error = carrier_errors("Call is not in-progress", code=21220)
    response = client.post("/api/terminate-call", json={"callId": call_id})

    assert response.status_code == 502
    assert response.json()["code"] == 21220
    assert client.get(f"/api/order/{call_id}").status_code == 404


def test_analyze_call(client, runtime, fake_llm):
    call_id = make_call(client)["callId"]
    client.post(f"/api/voice/incoming?callId={call_id}")
    client.post(f"/api/voice/process-speech?callId={call_id}", data={"SpeechResult": "Yes, this is Dana"})
    fake_llm.completion_text = '{"callSummary": "Manager confirmed identity", "customerSentiment": "positive"}'

    response = client.post("/api/analyze-call", json={"callId": call_id})

    assert response.status_code == 200
    body = response.json()
    assert body["analysis"]["callSummary"] == "Manager confirmed identity"
    assert body["artifactId"].endswith(".txt")
    assert "Transcript:" in fake_llm.complete_calls[-1]["messages"][-1]["content"]


def test_analyze_call_errors(client):
    assert client.post("/api/analyze-call", json={}).status_code == 400
    assert client.post("/api/analyze-call", json={"callId": "call_missing"}).status_code == 404

    response = client.post("/api/analyze-call", json={"callId": "call_missing", "prompt": "Analyze"})
    assert response.status_code == 200
    assert response.json()["artifactId"] is None


def test_event_stream_receives_partial_speech(client, runtime):
    runtime.store.create("call_ws", "sys")

    with client.websocket_connect("/ws/events") as websocket:
        for _ in range(100):
            if runtime.broadcaster.subscriber_count:
                break
            time.sleep(0.01)

        response = client.post(
            "/api/voice/partial-speech?callId=call_ws",
            data={"PartialSpeechResult": "Yes I would like"},
        )
        assert response.status_code == 200

        event = websocket.receive_json()

    assert event["type"] == "partialSpeechUpdate"
    assert event["callId"] == "call_ws"
    assert event["data"] == {"partialSpeech": "Yes I would like"}


@pytest.fixture
def azure_voice(runtime, config):
    """Swap in an Azure provider backed by a mock transport."""

    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "GET":
            return httpx.Response(200, json=[
                {"ShortName": "en-US-LunaNeural", "Locale": "en-US", "Gender": "Female", "VoiceType": "Neural"},
                {"ShortName": "fr-FR-DeniseNeural", "Locale": "fr-FR", "Gender": "Female", "VoiceType": "Neural"},
            ])
        return httpx.Response(200, content=b"ID3azure")

    azure_config = replace(config, tts_provider="azure", azure_speech_key="azure_test_key", azure_speech_region="eastus")
    runtime.tts.provider = AzureTTS(azure_config, client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
    return runtime.tts.provider


def test_performance_tracks_service_latency(client):
    call_id = make_call(client)["callId"]
    client.post(f"/api/voice/incoming?callId={call_id}")
    client.post(f"/api/voice/process-speech?callId={call_id}", data={"SpeechResult": "Yes, this is Dana"})

    body = client.get("/api/performance").json()

    assert body["summary"]["twilio"]["count"] == 1
    assert body["metrics"]["twilio"][0]["operation"] == "place_call"
    assert body["summary"]["openai"]["count"] >= 1
    assert body["summary"]["tts"]["count"] >= 1
    assert client.get("/metrics").json()["latency"]["twilio"]["count"] == 1


def test_latency_test_endpoint(client, fake_llm, fake_provider):
    response = client.post("/api/test/latency")

    assert response.status_code == 200
    current = response.json()["metrics"]["current"]
    assert set(current) == {"openai", "tts", "total"}
    assert fake_llm.complete_calls[-1]["max_tokens"] == 20
    assert fake_provider.requests == ["Hello, this is a test message."]

    operations = [s["operation"] for s in response.json()["metrics"]["historical"]["openai"]]
    assert "test_completion" in operations


def test_latency_test_failure(client, fake_llm):
    fake_llm.completion_text = GenerationError("model unavailable")

    response = client.post("/api/test/latency")

    assert response.status_code == 500
    assert response.json()["error"] == "Latency test failed"


def test_azure_endpoints_without_azure_voice(client):
    assert client.get("/api/azure/status").json()["enabled"] is False
    assert client.get("/api/azure/voices").status_code == 500
    assert client.post("/api/azure/test-tts", json={"text": "Hi"}).status_code == 500


def test_azure_status_and_voices(client, azure_voice):
    status = client.get("/api/azure/status").json()
    assert status["enabled"] is True
    assert status["connected"] is True
    assert status["voicesAvailable"] == 1
    assert status["voice"] == "en-US-LunaNeural"

    voices = client.get("/api/azure/voices").json()
    assert [v["name"] for v in voices["voices"]] == ["en-US-LunaNeural"]
    assert voices["voiceConfigured"] == "en-US-LunaNeural"


def test_azure_test_tts(client, azure_voice):
    assert client.post("/api/azure/test-tts", json={}).status_code == 400

    response = client.post("/api/azure/test-tts", json={"text": "Testing Luna", "options": {"rate": "-5%"}})

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["audioUrl"] == f"/audio/{body['audioFileName']}"
    assert client.get(body["audioUrl"]).content == b"ID3azure"


def test_twilio_status(client, fake_carrier, carrier_errors):
    body = client.get("/api/twilio/status").json()
    assert body["account"]["status"] == "active"
    assert body["fromNumber"] == "+15550001111"

    fake_carrier.place_error = carrier_errors("Authenticate", code=20003)
    response = client.get("/api/twilio/status")
    assert response.status_code == 502
    assert response.json()["code"] == 20003
