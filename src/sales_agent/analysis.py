"""
Post-call analysis with the analysis model.

The caller of `analyze()` supplies the prompt (it usually embeds the transcript
and the JSON shape it wants back). The reply is parsed into `CallAnalysis`; if
the model returns something that isn't valid JSON for that shape, a neutral
fallback analysis is returned instead so archiving still works.
"""

import json
from typing import Any, List, Optional

import structlog
from pydantic import BaseModel, Field, ValidationError

from src.sales_agent.config import get_config
from src.sales_agent.errors import GenerationError
from src.sales_agent.llm import OpenAILLM
from src.sales_agent.session import CallSession

logger = structlog.get_logger(__name__)

ANALYSIS_SYSTEM_PROMPT = (
    "You are an expert sales call analyzer. Analyze the conversation and provide detailed "
    "insights in the exact JSON format requested. Focus on extracting actual order details, "
    "customer sentiment, and actionable recommendations."
)

ANALYSIS_MAX_TOKENS = 1000
ANALYSIS_TEMPERATURE = 0.3


class AnalyzedProduct(BaseModel):
    name: str = ""
    quantity: float = 0
    unit_price: float = Field(default=0, alias="unitPrice")
    total: float = 0

    model_config = {"populate_by_name": True}


class AnalyzedOrder(BaseModel):
    products: List[AnalyzedProduct] = Field(default_factory=list)
    subtotal: float = 0
    tax: float = 0
    total: float = 0


class CallMetrics(BaseModel):
    duration: Optional[str] = None
    satisfaction: Optional[float] = None


class CallAnalysis(BaseModel):
    """Structured result of a post-call analysis."""

    call_summary: str = Field(default="", alias="callSummary")
    customer_sentiment: str = Field(default="neutral", alias="customerSentiment")
    order_details: AnalyzedOrder = Field(default_factory=AnalyzedOrder, alias="orderDetails")
    call_metrics: CallMetrics = Field(default_factory=CallMetrics, alias="callMetrics")
    next_steps: List[str] = Field(default_factory=list, alias="nextSteps")
    is_fallback: bool = Field(default=False, alias="isFallback")

    model_config = {"populate_by_name": True, "extra": "allow"}

    def to_dict(self) -> dict:
        return self.model_dump(by_alias=True)


def fallback_analysis() -> CallAnalysis:
    return CallAnalysis(
        call_summary="Automatic analysis was not available for this call.",
        customer_sentiment="neutral",
        next_steps=["Review the call transcript manually"],
        is_fallback=True,
    )


def _strip_code_fence(text: str) -> str:
    text = text.strip()
    if text.startswith("```"):
        text = text.split("\n", 1)[1] if "\n" in text else ""
        if text.rstrip().endswith("```"):
            text = text.rstrip()[:-3]
    return text.strip()


def parse_analysis(text: str) -> CallAnalysis:
    """Parse a model reply; returns the fallback analysis when it can't."""
    try:
        data = json.loads(_strip_code_fence(text))
        if not isinstance(data, dict):
            raise ValueError("analysis is not a JSON object")
        return CallAnalysis.model_validate(data)
    except (ValueError, ValidationError) as e:
        logger.warning("Failed to parse call analysis", error=str(e))
        return fallback_analysis()


def default_analysis_prompt(session: CallSession) -> str:
    """Prompt used when a call is analyzed without a caller-supplied prompt."""
    lines = []
    for turn in session.history.turns(include_system=False):
        speaker = "Customer" if turn.role.value == "caller" else "Agent"
        lines.append(f"{speaker}: {turn.content}")
    transcript = "\n".join(lines) or "(no conversation)"
    return (
        "Analyze this sales call and respond with JSON only, using the keys "
        "callSummary, customerSentiment (positive|neutral|negative), "
        "orderDetails {products [{name, quantity, unitPrice, total}], subtotal, tax, total}, "
        "callMetrics {duration, satisfaction (1-10)}, nextSteps [string].\n\n"
        f"Transcript:\n{transcript}"
    )


class CallAnalyzer:
    def __init__(self, llm: OpenAILLM, config: Optional[Any] = None):
        self.config = config or get_config()
        self.llm = llm

    async def analyze(self, call_id: str, prompt: str) -> CallAnalysis:
        """
        Run the analysis model over `prompt`.

        Raises:
            GenerationError: if the model call itself fails
        """
        logger.info("Analyzing call", call_id=call_id, model=self.config.openai_analysis_model)
        messages = [
            {"role": "system", "content": ANALYSIS_SYSTEM_PROMPT},
            {"role": "user", "content": prompt},
        ]
        try:
            response = await self.llm.complete(
                messages,
                model=self.config.openai_analysis_model,
                max_tokens=ANALYSIS_MAX_TOKENS,
                temperature=ANALYSIS_TEMPERATURE,
            )
        except GenerationError:
            logger.error("Call analysis failed", call_id=call_id)
            raise

        analysis = parse_analysis(response.text)
        logger.info(
            "Call analysis completed",
            call_id=call_id,
            sentiment=analysis.customer_sentiment,
            fallback=analysis.is_fallback,
        )
        return analysis
