"""
Pytest configuration and fixtures.
"""

import pytest
import os
from unittest.mock import patch

from src.sales_agent.errors import CarrierError, GenerationError, SynthesisError
from src.sales_agent.llm import LLMResponse
from src.sales_agent.tts_providers.base import SynthesisProvider


@pytest.fixture(autouse=True)
def mock_env_vars(tmp_path):
    """Mock environment variables for tests."""
    env_vars = {
        "PUBLIC_BASE_URL": "https://test.example.com",
        "PORT": "3001",
        "LOG_LEVEL": "DEBUG",
        "TWILIO_ACCOUNT_SID": "ACtest123456789",
        "TWILIO_AUTH_TOKEN": "test_auth_token",
        "TWILIO_PHONE_NUMBER": "+15550001111",
        "OPENAI_API_KEY": "test_openai_key",
        "TTS_PROVIDER": "none",  # Tests inject a fake provider
        "STT_PROVIDER": "twilio",
        "SYSTEM_PROMPT": "",
        "SYSTEM_PROMPT_FILE": "",
        "CONVERSATION_HISTORY_DIR": str(tmp_path / "history"),
        "TEMP_AUDIO_DIR": str(tmp_path / "audio"),
    }

    with patch.dict(os.environ, env_vars):
        # Clear config cache
        from src.sales_agent.config import get_config
        get_config.cache_clear()
        yield
        get_config.cache_clear()


class FakeLLM:
    """Scripted stand-in for OpenAILLM."""

    model = "fake-live-model"

    def __init__(self, replies=None, completion_text='{"callSummary": "ok"}'):
        self.replies = list(replies or [])
        self.completion_text = completion_text
        self.generate_calls = []
        self.complete_calls = []
        self.closed = False

    async def generate(self, history, *, extra_context=None, instruction=None, max_tokens=100, temperature=0.5):
        self.generate_calls.append({
            "history": [(t.role.value, t.content) for t in history],
            "extra_context": list(extra_context or []),
            "instruction": instruction,
            "max_tokens": max_tokens,
            "temperature": temperature,
        })
        reply = self.replies.pop(0) if self.replies else "Sounds good! Anything else I can help with?"
        if isinstance(reply, Exception):
            raise reply
        return reply

    async def complete(self, messages, *, model=None, max_tokens=100, temperature=0.5, response_format=None):
        self.complete_calls.append({"messages": messages, "model": model, "max_tokens": max_tokens})
        if isinstance(self.completion_text, Exception):
            raise self.completion_text
        return LLMResponse(text=self.completion_text)

    async def close(self):
        self.closed = True


class FakeSynthesisProvider(SynthesisProvider):
    def __init__(self, fail=False):
        self.fail = fail
        self.requests = []

    async def synthesize(self, text, options):
        self.requests.append(text)
        if self.fail:
            raise SynthesisError("voice unavailable")
        return b"ID3" + text.encode("utf-8")


class FakeCarrier:
    """Records calls instead of talking to Twilio."""

    from_number = "+15550001111"

    def __init__(self, place_error=None, terminate_error=None):
        self.place_error = place_error
        self.terminate_error = terminate_error
        self.placed = []
        self.terminated = []

    async def place_call(self, destination, callbacks):
        if self.place_error is not None:
            raise self.place_error
        self.placed.append((destination, callbacks))
        return f"CA{len(self.placed):032d}"

    async def terminate_call(self, carrier_call_ref):
        self.terminated.append(carrier_call_ref)
        if self.terminate_error is not None:
            raise self.terminate_error

    async def account_status(self):
        if self.place_error is not None:
            raise self.place_error
        return {
            "account": {"sid": "ACtest123456789", "friendlyName": "Test", "status": "active", "type": "Trial"},
            "verifiedNumbers": [],
            "twilioNumbers": [{"phoneNumber": self.from_number, "friendlyName": "Main"}],
            "fromNumber": self.from_number,
        }


@pytest.fixture
def fake_llm():
    return FakeLLM()


@pytest.fixture
def fake_provider():
    return FakeSynthesisProvider()


@pytest.fixture
def fake_carrier():
    return FakeCarrier()


@pytest.fixture
def config():
    from src.sales_agent.config import get_config
    return get_config()


@pytest.fixture
def runtime(config, fake_llm, fake_provider, fake_carrier):
    """Fully wired runtime with in-memory adapters."""
    from server.app import build_runtime
    from src.sales_agent.cache import ResponseCache
    from src.sales_agent.tts import TTSManager

    tts = TTSManager(
        fake_provider,
        cache=ResponseCache(),
        audio_dir=config.audio_path,
        base_url=config.base_url,
        cleanup_seconds=config.audio_cleanup_seconds,
    )
    rt = build_runtime(config, llm=fake_llm, tts=tts, carrier=fake_carrier)
    yield rt
    rt.lifecycle.shutdown()
    for filename in list(tts._cleanup_handles):
        tts.cleanup(filename)


@pytest.fixture
def carrier_errors():
    """Factory for carrier failures shaped like Twilio's."""
    def _make(message="Invalid 'To' Phone Number", code=21211):
        return CarrierError(
            message,
            code=code,
            more_info=f"https://www.twilio.com/docs/errors/{code}",
        )
    return _make


@pytest.fixture
def generation_error():
    return GenerationError("upstream timeout")
