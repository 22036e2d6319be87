"""
Durable text transcripts of finished calls.

One plain-text file per call in the conversation history directory, named
`call_<call id>_<timestamp>.txt`, with the call header, order lines, the
transcript (system instruction omitted) and the optional analysis.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
import re
from typing import Any, Dict, List, Optional

import structlog

from src.sales_agent.analysis import CallAnalysis
from src.sales_agent.session import CallSession, ConversationHistory, OrderInProgress, Role

logger = structlog.get_logger(__name__)

RULE = "=" * 80
SUB_RULE = "-" * 40

_SAFE_NAME_RE = re.compile(r"^[A-Za-z0-9_.-]+\.txt$")


@dataclass(frozen=True)
class CallMetadata:
    phone_number: str = ""
    status: str = ""
    duration_seconds: Optional[float] = None
    reason: str = ""

    @classmethod
    def from_session(cls, session: CallSession, reason: str = "") -> "CallMetadata":
        return cls(
            phone_number=session.phone_number,
            status=session.status.value,
            duration_seconds=session.duration_seconds,
            reason=reason,
        )


def format_duration(seconds: Optional[float]) -> str:
    if seconds is None:
        return "Unknown"
    total = int(seconds)
    return f"{total // 60}:{total % 60:02d}"


def _money(value: Any) -> str:
    return f"${float(value):.2f}"


class TranscriptArchive:
    def __init__(self, directory: Path, *, agent_name: str = "Sarah"):
        self.directory = Path(directory)
        self.agent_name = agent_name

    def render(
        self,
        call_id: str,
        history: ConversationHistory,
        order: OrderInProgress,
        metadata: CallMetadata,
        analysis: Optional[CallAnalysis] = None,
    ) -> str:
        out: List[str] = [RULE, "VOICE AGENT CALL HISTORY", RULE]
        out.append(f"Call ID: {call_id}")
        out.append(f"Date: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
        out.append(f"Duration: {format_duration(metadata.duration_seconds)}")
        out.append(f"Customer Name: {order.customer_name or 'Unknown'}")
        out.append(f"Hotel Name: {order.venue_name or 'Unknown'}")
        out.append(f"Order Total: {_money(order.total)}")
        out.append(f"Phone Number: {metadata.phone_number or 'Unknown'}")
        out.append(f"Status: {metadata.status or 'Unknown'}")
        if metadata.reason:
            out.append(f"End Reason: {metadata.reason}")

        if order.lines:
            out += ["", RULE, "ORDER DETAILS", RULE]
            for index, line in enumerate(order.lines, start=1):
                out.append(f"{index}. {line.product}")
                out.append(f"   Quantity: {line.quantity} cases")
                out.append(f"   Price per case: {_money(line.unit_price)}")
                out.append(f"   Total: {_money(line.line_total)}")
                out.append("")
            out.append(f"TOTAL ORDER VALUE: {_money(order.total)}")
            out.append("")

        out += [RULE, "CONVERSATION TRANSCRIPT", RULE, ""]
        for turn in history.turns(include_system=False):
            speaker = "CUSTOMER" if turn.role == Role.CALLER else f"AI AGENT ({self.agent_name})"
            stamp = datetime.fromtimestamp(turn.timestamp).strftime("%H:%M:%S")
            out.append(f"{speaker} [{stamp}]")
            out.append(turn.content)
            out.append("")

        if analysis is not None:
            out += self._render_analysis(analysis)

        out += [RULE, "END OF CALL HISTORY", RULE]
        return "\n".join(out) + "\n"

    def _render_analysis(self, analysis: CallAnalysis) -> List[str]:
        satisfaction = analysis.call_metrics.satisfaction
        out = [RULE, "CALL ANALYSIS", RULE]
        out.append(f"Summary: {analysis.call_summary}")
        out.append(f"Customer Sentiment: {analysis.customer_sentiment}")
        out.append(f"Satisfaction Score: {satisfaction if satisfaction is not None else 'N/A'}/10")
        out.append("")

        products = analysis.order_details.products
        if products:
            out += ["ORDER DETAILS:", SUB_RULE]
            for index, product in enumerate(products, start=1):
                out.append(f"{index}. {product.name}")
                out.append(f"   Quantity: {product.quantity:g} cases")
                out.append(f"   Unit Price: {_money(product.unit_price)}")
                out.append(f"   Total: {_money(product.total)}")
                out.append("")
            out.append(f"Subtotal: {_money(analysis.order_details.subtotal)}")
            out.append(f"Tax: {_money(analysis.order_details.tax)}")
            out.append(f"TOTAL: {_money(analysis.order_details.total)}")
            out.append("")
        else:
            out += ["ORDER DETAILS: No order placed", ""]

        if analysis.next_steps:
            out += ["NEXT STEPS:", SUB_RULE]
            out += [f"{index}. {step}" for index, step in enumerate(analysis.next_steps, start=1)]
            out.append("")
        return out

    def persist(
        self,
        call_id: str,
        history: ConversationHistory,
        order: OrderInProgress,
        metadata: CallMetadata,
        analysis: Optional[CallAnalysis] = None,
    ) -> str:
        """Write the transcript; returns the artifact id (the file name)."""
        self.directory.mkdir(parents=True, exist_ok=True)
        timestamp = datetime.now().strftime("%Y-%m-%dT%H-%M-%S-%f")
        filename = f"call_{call_id}_{timestamp}.txt"
        content = self.render(call_id, history, order, metadata, analysis)
        (self.directory / filename).write_text(content, encoding="utf-8")
        logger.info(
            "Conversation history saved",
            call_id=call_id,
            filename=filename,
            turns=len(history) - 1,
            order_lines=len(order.lines),
        )
        return filename

    def list_files(self) -> List[Dict[str, Any]]:
        """Saved transcripts, newest first."""
        if not self.directory.is_dir():
            return []
        files = []
        for path in self.directory.glob("*.txt"):
            stat = path.stat()
            files.append({
                "filename": path.name,
                "size": stat.st_size,
                "modified": datetime.fromtimestamp(stat.st_mtime).isoformat(),
                "_mtime": stat.st_mtime,
            })
        files.sort(key=lambda f: f["_mtime"], reverse=True)
        for f in files:
            del f["_mtime"]
        return files

    def path_for(self, filename: str) -> Optional[Path]:
        """Resolve a transcript file name; None if unsafe or missing."""
        if not _SAFE_NAME_RE.match(filename or "") or filename.startswith("."):
            return None
        path = self.directory / filename
        return path if path.is_file() else None
