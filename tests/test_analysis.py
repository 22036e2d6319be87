"""
Tests for post-call analysis parsing.
"""

import pytest

from src.sales_agent.analysis import CallAnalyzer, default_analysis_prompt, parse_analysis
from src.sales_agent.errors import GenerationError
from src.sales_agent.session import SessionStore


def test_parse_analysis_accepts_fenced_json() -> None:
    analysis = parse_analysis(
        '```json\n{"callSummary": "Ordered bagels", "customerSentiment": "positive", '
        '"orderDetails": {"products": [{"name": "Plain Bagels", "quantity": 2, "unitPrice": 23, "total": 46}], '
        '"total": 46}}\n```'
    )

    assert analysis.is_fallback is False
    assert analysis.call_summary == "Ordered bagels"
    assert analysis.order_details.products[0].unit_price == 23
    data = analysis.to_dict()
    assert data["customerSentiment"] == "positive"
    assert data["orderDetails"]["products"][0]["unitPrice"] == 23


@pytest.mark.parametrize("reply", ["not json at all", "[1, 2, 3]", '{"orderDetails": {"products": "nope"}}'])
def test_parse_analysis_falls_back(reply) -> None:
    analysis = parse_analysis(reply)

    assert analysis.is_fallback is True
    assert analysis.customer_sentiment == "neutral"
    assert analysis.call_metrics.satisfaction is None


def test_default_prompt_includes_transcript() -> None:
    session = SessionStore().create("call_1", "sys")
    session.history.add_agent_message("Hi, is this Dana?")
    session.history.add_caller_message("Speaking.")

    prompt = default_analysis_prompt(session)

    assert "Agent: Hi, is this Dana?" in prompt
    assert "Customer: Speaking." in prompt
    assert "sys" not in prompt.split("Transcript:")[1]


@pytest.mark.asyncio
async def test_analyzer_uses_analysis_model(config, fake_llm) -> None:
    fake_llm.completion_text = '{"callSummary": "Short call", "nextSteps": ["Call back"]}'

    analysis = await CallAnalyzer(fake_llm, config).analyze("call_1", "Analyze this")

    assert analysis.next_steps == ["Call back"]
    call = fake_llm.complete_calls[0]
    assert call["model"] == "gpt-4.1"
    assert call["max_tokens"] == 1000
    assert call["messages"][-1] == {"role": "user", "content": "Analyze this"}


@pytest.mark.asyncio
async def test_analyzer_propagates_model_failure(config, fake_llm) -> None:
    fake_llm.completion_text = GenerationError("down")

    with pytest.raises(GenerationError):
        await CallAnalyzer(fake_llm, config).analyze("call_1", "Analyze this")
