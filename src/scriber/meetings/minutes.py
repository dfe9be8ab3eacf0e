"""MinutesGenerator -- structured meeting minutes from a finished transcript.

Uses the instructor + litellm pattern for structured LLM extraction. Long
transcripts are map-reduced: chunk at speaker boundaries, summarize each
chunk, then synthesize the final minutes from the chunk summaries.

Each template has its own instruction prompt and its own markdown layout.
Every LLM call goes through TranscriptionPort.call(), so it shares the
provider retry policy and error taxonomy; failures propagate to the stage
worker instead of producing empty minutes.

Exports:
    MinutesGenerator: Minutes generation service.
    ExtractedMinutes: Response model for instructor extraction.
    ChunkSummary: Response model for map-phase summaries.
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any

import structlog
from pydantic import BaseModel, Field

from src.scriber.meetings.schemas import (
    ActionItem,
    Decision,
    Meeting,
    MeetingMinutes,
    MinutesTemplate,
    Speaker,
    TranscriptSegment,
)
from src.scriber.pipeline.continuity import format_timestamp
from src.scriber.pipeline.port import TranscriptionPort

logger = structlog.get_logger(__name__)


# ── Constants ────────────────────────────────────────────────────────────────

MAX_TOKENS_PER_CHUNK = 12_000  # ~15 minutes of conversation
CHARS_PER_TOKEN = 4.0


# ── Pydantic Response Models for Instructor ──────────────────────────────────


class ExtractedActionItem(BaseModel):
    """Action item extracted from a transcript by the LLM."""

    description: str = Field(description="What needs to be done")
    owner: str | None = Field(None, description="Person responsible, if stated")
    due_date: str | None = Field(None, description="When it's due, if mentioned")


class ExtractedDecision(BaseModel):
    """Decision or commitment extracted from a transcript by the LLM."""

    decision: str = Field(description="What was decided")
    context: str = Field(default="", description="Discussion context leading to decision")


class ExtractedMinutes(BaseModel):
    """Full structured minutes extracted from a transcript."""

    executive_summary: str = Field(description="High-level summary of the meeting")
    key_topics: list[str] = Field(default_factory=list, description="Main topics discussed")
    discussion: list[str] = Field(
        default_factory=list,
        description="Topic-by-topic notes of the discussion, one paragraph per topic",
    )
    action_items: list[ExtractedActionItem] = Field(
        default_factory=list, description="All action items with owners"
    )
    decisions: list[ExtractedDecision] = Field(
        default_factory=list, description="Decisions and commitments made"
    )


class ChunkSummary(BaseModel):
    """Summary of one transcript chunk for map-reduce processing."""

    summary: str = Field(description="Summary of this transcript segment")
    action_items: list[ExtractedActionItem] = Field(default_factory=list)
    decisions: list[ExtractedDecision] = Field(default_factory=list)


# ── Prompts ──────────────────────────────────────────────────────────────────

BASE_SYSTEM_PROMPT = (
    "You are writing minutes for a recorded meeting from its speaker-attributed "
    "transcript. Note the absence of items rather than making assumptions, and "
    "be precise about who said what and who committed to what."
)

TEMPLATE_PROMPTS: dict[MinutesTemplate, str] = {
    MinutesTemplate.EXECUTIVE: (
        "Audience: executives with two minutes to spare. Write a 1-2 paragraph "
        "executive summary, at most 5 key topics, and only the decisions and "
        "action items that matter at leadership level. Leave discussion empty."
    ),
    MinutesTemplate.DETAILED: (
        "Produce detailed minutes: a 2-3 paragraph summary, every topic discussed, "
        "one discussion paragraph per topic covering the positions taken, plus all "
        "decisions and action items."
    ),
    MinutesTemplate.ACTION_ITEMS: (
        "Focus on follow-up. Keep the summary to 2-3 sentences, and extract every "
        "action item with its owner and due date when stated, and every decision "
        "that creates work. Leave discussion empty."
    ),
    MinutesTemplate.COMPREHENSIVE: (
        "Produce comprehensive minutes suitable as the record of the meeting: a "
        "full summary, all topics, thorough per-topic discussion notes including "
        "disagreements and open questions, all decisions with context, and all "
        "action items."
    ),
    MinutesTemplate.GENERAL_SUMMARY: (
        "Write a plain-language summary of 2-3 paragraphs for someone who missed "
        "the meeting, with the main topics. Include decisions and action items "
        "only when they were stated explicitly."
    ),
}

CHUNK_SUMMARY_SYSTEM_PROMPT = (
    "You are summarizing one segment of a longer meeting transcript. Extract a "
    "concise summary, any action items with owners, and any decisions made in "
    "this segment. Be precise about attribution."
)

REDUCE_SYSTEM_PROMPT = (
    "You are synthesizing segment summaries from one long meeting into final "
    "minutes. Combine and deduplicate information across segments and merge "
    "overlapping information from adjacent segments."
)

TEMPLATE_HEADINGS: dict[MinutesTemplate, str] = {
    MinutesTemplate.EXECUTIVE: "Executive Brief",
    MinutesTemplate.DETAILED: "Meeting Minutes",
    MinutesTemplate.ACTION_ITEMS: "Action Items",
    MinutesTemplate.COMPREHENSIVE: "Meeting Record",
    MinutesTemplate.GENERAL_SUMMARY: "Meeting Summary",
}


# ── MinutesGenerator ─────────────────────────────────────────────────────────


class MinutesGenerator:
    """Generates structured minutes for a meeting in its chosen template.

    Args:
        port: Retry wrapper shared with the other provider calls.
        model: litellm model identifier.
        timeout: Per-call timeout in seconds.
        client: Instructor client; built from litellm.acompletion when omitted.
    """

    def __init__(
        self,
        port: TranscriptionPort,
        model: str,
        timeout: int = 600,
        client: Any | None = None,
    ) -> None:
        self._port = port
        self._model = model
        self._timeout = timeout
        self._client = client

    def _get_client(self) -> Any:
        if self._client is None:
            import instructor
            import litellm

            self._client = instructor.from_litellm(litellm.acompletion)
        return self._client

    async def generate(
        self,
        meeting: Meeting,
        segments: list[TranscriptSegment],
        speakers: list[Speaker],
        template: MinutesTemplate | None = None,
    ) -> MeetingMinutes:
        """Build minutes for ``meeting``; the caller persists them.

        Below MAX_TOKENS_PER_CHUNK the transcript is sent in one call,
        otherwise it is map-reduced.
        """
        template = template or meeting.minutes_template
        transcript_text = format_transcript(segments, speakers)

        if _estimate_tokens(transcript_text) < MAX_TOKENS_PER_CHUNK:
            extracted = await self._extract_single_pass(meeting, transcript_text, template)
            passes = 1
        else:
            chunks = _chunk_transcript(transcript_text)
            extracted = await self._extract_map_reduce(meeting, chunks, template)
            passes = len(chunks) + 1

        minutes = MeetingMinutes(
            meeting_id=meeting.id,
            template=template,
            content=render_markdown(meeting.title, template, extracted),
            executive_summary=extracted.executive_summary,
            key_topics=extracted.key_topics,
            action_items=[
                ActionItem(description=a.description, owner=a.owner, due_date=a.due_date)
                for a in extracted.action_items
            ],
            decisions=[
                Decision(decision=d.decision, context=d.context) for d in extracted.decisions
            ],
            generated_at=datetime.now(timezone.utc),
        )
        logger.info(
            "minutes.generated",
            meeting_id=str(meeting.id),
            template=template.value,
            llm_calls=passes,
            action_items=len(minutes.action_items),
            decisions=len(minutes.decisions),
            key_topics=len(minutes.key_topics),
        )
        return minutes

    async def _complete(
        self,
        response_model: type[BaseModel],
        system_prompt: str,
        user_content: str,
        operation_name: str,
        max_tokens: int = 4096,
    ) -> Any:
        client = self._get_client()
        return await self._port.call(
            lambda: client.chat.completions.create(
                model=self._model,
                response_model=response_model,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_content},
                ],
                max_tokens=max_tokens,
                temperature=0.1,
                timeout=self._timeout,
            ),
            operation_name,
        )

    async def _extract_single_pass(
        self, meeting: Meeting, transcript_text: str, template: MinutesTemplate
    ) -> ExtractedMinutes:
        return await self._complete(
            ExtractedMinutes,
            f"{BASE_SYSTEM_PROMPT}\n\n{TEMPLATE_PROMPTS[template]}",
            f"Meeting: {meeting.title}\n\nTranscript:\n{transcript_text}",
            "minutes",
        )

    async def _extract_map_reduce(
        self, meeting: Meeting, chunks: list[str], template: MinutesTemplate
    ) -> ExtractedMinutes:
        summaries: list[ChunkSummary] = []
        for i, chunk in enumerate(chunks):
            summary = await self._complete(
                ChunkSummary,
                CHUNK_SUMMARY_SYSTEM_PROMPT,
                f"Transcript segment:\n{chunk}",
                f"minutes[map {i}]",
                max_tokens=2048,
            )
            summaries.append(summary)

        combined = "\n\n---\n\n".join(_format_summary(i, s) for i, s in enumerate(summaries))
        return await self._complete(
            ExtractedMinutes,
            f"{REDUCE_SYSTEM_PROMPT}\n\n{TEMPLATE_PROMPTS[template]}",
            f"Meeting: {meeting.title}\n\nSegment Summaries:\n{combined}",
            "minutes[reduce]",
        )


# ── Module-Level Helpers ─────────────────────────────────────────────────────


def format_transcript(segments: list[TranscriptSegment], speakers: list[Speaker]) -> str:
    """One ``Name: text`` line per segment, prefixed with its timestamp."""
    names = {s.id: s.display_name for s in speakers}
    return "\n".join(
        f"{names.get(seg.speaker_id, 'Unknown')}: [{format_timestamp(seg.start_time)}] {seg.text}"
        for seg in segments
    )


def _format_summary(index: int, summary: ChunkSummary) -> str:
    lines = [f"Segment {index + 1}:", summary.summary]
    for item in summary.action_items:
        owner = f" (owner: {item.owner})" if item.owner else ""
        due = f" (due: {item.due_date})" if item.due_date else ""
        lines.append(f"Action: {item.description}{owner}{due}")
    for decision in summary.decisions:
        lines.append(f"Decision: {decision.decision}")
    return "\n".join(lines)


def render_markdown(title: str, template: MinutesTemplate, extracted: ExtractedMinutes) -> str:
    """Lay the extracted fields out as markdown for the given template."""
    detailed = template in (MinutesTemplate.DETAILED, MinutesTemplate.COMPREHENSIVE)
    parts = [f"# {TEMPLATE_HEADINGS[template]}: {title}"]

    def section(name: str, lines: list[str], sep: str = "\n") -> None:
        if lines:
            parts.append(f"## {name}\n" + sep.join(lines))

    summary = [extracted.executive_summary] if extracted.executive_summary else []
    topics = [f"- {t}" for t in extracted.key_topics]
    decisions = [
        f"- {d.decision}" + (f" ({d.context})" if d.context and detailed else "")
        for d in extracted.decisions
    ]
    actions = [
        "- [ ] "
        + (f"**{a.owner}**: " if a.owner else "")
        + a.description
        + (f" (due {a.due_date})" if a.due_date else "")
        for a in extracted.action_items
    ]

    if template is MinutesTemplate.ACTION_ITEMS:
        section("Action Items", actions)
        section("Decisions", decisions)
        section("Summary", summary)
    else:
        section("Summary", summary)
        section("Key Topics", topics)
        if detailed:
            section("Discussion", extracted.discussion, sep="\n\n")
        section("Decisions", decisions)
        section("Action Items", actions)

    return "\n\n".join(parts) + "\n"


def _estimate_tokens(text: str) -> int:
    """Rough token count: characters / CHARS_PER_TOKEN."""
    return int(len(text) / CHARS_PER_TOKEN)


def _chunk_transcript(transcript_text: str) -> list[str]:
    """Split a transcript at speaker turns near the token limit.

    The last two speaker turns of each chunk are repeated at the start of
    the next one for context.
    """
    if not transcript_text.strip():
        return []

    lines = transcript_text.split("\n")
    max_chars = int(MAX_TOKENS_PER_CHUNK * CHARS_PER_TOKEN)

    speaker_pattern = re.compile(r"^[A-Za-z][A-Za-z0-9\s'.,-]*:\s")
    turn_starts = [i for i, line in enumerate(lines) if speaker_pattern.match(line)]
    if not turn_starts:
        return _chunk_by_chars(transcript_text, max_chars)

    chunks: list[str] = []
    current_start = 0
    overlap_turns: list[int] = []

    for turn_idx in turn_starts:
        segment_to_here = "\n".join(lines[current_start:turn_idx])
        if len(segment_to_here) >= max_chars and turn_idx > current_start:
            chunks.append(segment_to_here)
            # Overlap must still move the window forward
            candidates = [t for t in overlap_turns[-2:] if t > current_start]
            current_start = candidates[0] if candidates else turn_idx

        overlap_turns.append(turn_idx)
        if len(overlap_turns) > 2:
            overlap_turns.pop(0)

    remaining = "\n".join(lines[current_start:])
    if remaining.strip():
        chunks.append(remaining)

    return chunks or [transcript_text]


def _chunk_by_chars(text: str, max_chars: int) -> list[str]:
    """Fallback chunking by character count when no speaker turns are found."""
    chunks: list[str] = []
    current: list[str] = []
    current_len = 0

    for line in text.split("\n"):
        line_len = len(line) + 1
        if current_len + line_len > max_chars and current:
            chunks.append("\n".join(current))
            current = []
            current_len = 0
        current.append(line)
        current_len += line_len

    if current:
        chunks.append("\n".join(current))
    return chunks
