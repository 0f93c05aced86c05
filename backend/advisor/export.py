"""
Gap Advisor Backend — Conversation Exporter

Renders one conversation (full history, optionally the analysis) as Markdown,
JSON or PDF. Every format is rendered from the same ExportDocument, so message
order and analysis inclusion cannot drift between formats.
"""

import json
from dataclasses import dataclass
from datetime import datetime, timezone

from fpdf import FPDF
from fpdf.enums import XPos, YPos

from advisor import analyses, conversations, db
from advisor.config import log
from advisor.conversations import InvalidInput, NotFound
from advisor.models import Analysis, Conversation, ExportResult, Message

FORMATS = {
    "markdown": ("md", "text/markdown"),
    "json": ("json", "application/json"),
    "pdf": ("pdf", "application/pdf"),
}

ROLE_LABELS = {"user": "User", "assistant": "AI"}


@dataclass
class ExportDocument:
    conversation: Conversation
    messages: list[Message]
    analysis: Analysis | None
    exported_at: datetime

    @property
    def title(self) -> str:
        if self.analysis is not None:
            return f"Conversation: {self.analysis.query}"
        return f"Conversation {self.conversation.id}"


async def build_export_document(
    conversation_id: str,
    include_analysis: bool = True,
    user_id: str | None = None,
) -> ExportDocument:
    """Load everything an export needs. No truncation: the whole history is included."""
    conversation = await conversations.get_conversation(conversation_id)
    if user_id is not None and conversation.user_id != user_id:
        raise NotFound(f"Conversation {conversation_id} not found")
    messages = await conversations.get_messages(conversation_id)
    analysis = await analyses.get_analysis(conversation.analysis_id) if include_analysis else None
    return ExportDocument(
        conversation=conversation,
        messages=messages,
        analysis=analysis,
        exported_at=datetime.now(timezone.utc),
    )


# -----------------------------------------------------------------------------
# Analysis summary (shared by markdown and pdf)
# -----------------------------------------------------------------------------


def _analysis_summary_lines(analysis: Analysis) -> list[str]:
    lines = [f"Query: {analysis.query}"]
    if analysis.parameters:
        lines.append("Parameters: " + ", ".join(f"{k}={v}" for k, v in sorted(analysis.parameters.items())))
    if analysis.innovation_score is not None:
        lines.append(f"Innovation Score: {analysis.innovation_score:g}/100")
    if analysis.feasibility_rating:
        lines.append(f"Feasibility: {analysis.feasibility_rating}")
    if analysis.gaps:
        lines.append("Top Gaps: " + "; ".join(g.title for g in analysis.gaps[:5]))
    if analysis.competitors:
        lines.append("Key Competitors: " + ", ".join(c.name for c in analysis.competitors[:5]))
    return lines


def _timestamp(value: datetime) -> str:
    return value.strftime("%Y-%m-%d %H:%M UTC")


# -----------------------------------------------------------------------------
# Renderers
# -----------------------------------------------------------------------------


def render_markdown(doc: ExportDocument) -> str:
    parts = [f"# {doc.title}", "", f"_Exported {_timestamp(doc.exported_at)}_", ""]
    if doc.analysis is not None:
        parts += ["## Analysis Summary", ""]
        parts += [f"- {line}" for line in _analysis_summary_lines(doc.analysis)]
        parts.append("")
    parts += ["## Conversation", ""]
    for message in doc.messages:
        parts += [f"**{ROLE_LABELS[message.role]}:**", "", message.content, ""]
    return "\n".join(parts).rstrip() + "\n"


def render_json(doc: ExportDocument) -> str:
    payload = {
        "conversation": doc.conversation.model_dump(mode="json"),
        "messages": [m.model_dump(mode="json") for m in doc.messages],
        "exported_at": doc.exported_at.isoformat(),
    }
    if doc.analysis is not None:
        payload["analysis"] = doc.analysis.model_dump(mode="json")
    return json.dumps(payload, indent=2, ensure_ascii=False)


def _latin1(text: str) -> str:
    # Core PDF fonts only cover Latin-1.
    return text.encode("latin-1", "replace").decode("latin-1")


def render_pdf(doc: ExportDocument) -> bytes:
    pdf = FPDF()
    pdf.set_auto_page_break(auto=True, margin=15)
    pdf.add_page()

    def write(text: str, style: str = "", size: int = 11, height: float = 6) -> None:
        pdf.set_font("Helvetica", style, size)
        pdf.multi_cell(0, height, _latin1(text), new_x=XPos.LMARGIN, new_y=YPos.NEXT)

    write(doc.title, "B", 16, 9)
    write(f"Exported {_timestamp(doc.exported_at)}", "I", 9)
    pdf.ln(4)

    if doc.analysis is not None:
        write("Analysis Summary", "B", 13, 8)
        for line in _analysis_summary_lines(doc.analysis):
            write(line, size=10, height=5)
        pdf.ln(4)

    write("Conversation", "B", 13, 8)
    for message in doc.messages:
        write(f"{ROLE_LABELS[message.role]}:", "B", 11)
        write(message.content, size=10, height=5)
        pdf.ln(3)

    return bytes(pdf.output())


# -----------------------------------------------------------------------------
# Public entry point
# -----------------------------------------------------------------------------


async def export_conversation(
    conversation_id: str,
    format: str,
    include_analysis: bool = True,
    user_id: str | None = None,
) -> ExportResult:
    """
    Export a conversation in `format` ('pdf' | 'markdown' | 'json').

    PDF bytes are also stored in the export bucket and the result carries its URL.

    Raises:
        InvalidInput: Unknown format.
        NotFound: Conversation (or, with include_analysis, its analysis) missing.
    """
    if format not in FORMATS:
        raise InvalidInput(f"Unsupported export format: {format}")
    extension, mime_type = FORMATS[format]

    doc = await build_export_document(conversation_id, include_analysis, user_id)
    filename = f"conversation-{conversation_id}-{doc.exported_at.strftime('%Y%m%d-%H%M%S')}.{extension}"

    url = None
    if format == "markdown":
        content = render_markdown(doc)
    elif format == "json":
        content = render_json(doc)
    else:
        content = render_pdf(doc)
        url = await db.store_export_artifact(f"{conversation_id}/{filename}", content, mime_type)

    log("INFO", "conversation exported", conversation_id=conversation_id, format=format,
        include_analysis=include_analysis, message_count=len(doc.messages))
    return ExportResult(format=format, filename=filename, mime_type=mime_type, content=content, url=url)
