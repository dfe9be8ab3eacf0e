"""Gemini transcription provider via litellm.

Transcription sends the audio inline (base64 data URI) with a diarization
prompt and expects a bare JSON array of segments back; code fences and any
prose around the array are stripped before parsing. Enhancement and
redaction use instructor for structured output.

The provider makes exactly one attempt per call. Retries belong to
TranscriptionPort.
"""

from __future__ import annotations

import asyncio
import base64
import json
import re
from pathlib import Path
from typing import Any

import structlog
from pydantic import TypeAdapter, ValidationError

from src.scriber.pipeline.errors import ProviderResponseError
from src.scriber.providers.base import (
    EnhancementResult,
    RawSegment,
    RedactionResult,
    TranscriptionResult,
)

logger = structlog.get_logger(__name__)

MAX_OUTPUT_TOKENS = 65536

_FENCE = re.compile(r"```(?:json)?\s*|\s*```")
_ARRAY = re.compile(r"\[.*\]", re.DOTALL)
_segments_adapter: TypeAdapter[list[RawSegment]] = TypeAdapter(list[RawSegment])

TRANSCRIBE_PROMPT = """You are a professional audio transcription engine with speaker diarization.
{context}
## INSTRUCTIONS
1. TRANSCRIPTION: Transcribe the audio verbatim. Mark unintelligible speech as [inaudible].
2. DIARIZATION: Identify distinct speakers by voice.
   - Assign consistent ids ("spk_1", "spk_2", ...) in order of first appearance.
   - If the continuation context lists known speakers, reuse their ids and labels when the voice matches.
   - Labels stay generic ("Speaker 1") unless a name is explicitly stated; set nameConfidence above 0 only then.
3. TIMESTAMPS: start/end in SECONDS from the start of THIS audio file, as decimals.
4. FORMAT: Return ONLY a JSON array:
[{{"speakerId":"spk_1","speakerLabel":"Speaker 1","text":"...","startTime":0.0,"endTime":3.5,"languagesUsed":["en"],"nameConfidence":0.0}}]"""

CONTEXT_BLOCK = "\n## CONTINUATION CONTEXT\nThis audio continues an earlier recording.\n{context}\n"

ENHANCE_PROMPT = (
    "You are an expert transcript editor. Each line of the transcript is "
    "'[index] Speaker: text'.\n"
    "1. Fix spelling, capitalization and grammar. For each changed line return "
    "segment_index, the exact original_text, the corrected_text and a short reason.\n"
    "2. Suggest a real name for a generic speaker label ONLY when a speaker "
    "introduces themselves or is addressed by name; quote that line as evidence."
)

REDACT_PROMPT = (
    "You are a data privacy officer. Each line of the transcript is "
    "'[index] Speaker: text'.\n"
    "Redact names, email addresses, phone numbers and physical addresses with "
    "placeholders [NAME], [EMAIL], [PHONE], [ADDRESS]. Return only changed lines "
    "with their segment_index and redacted_text, the total number of items "
    "redacted, and the PII types found."
)


def parse_segments(response_text: str) -> list[RawSegment]:
    """Extract the segment array from a model response.

    Raises:
        ProviderResponseError: If no JSON array of segments can be read.
    """
    cleaned = _FENCE.sub("", response_text).strip()
    match = _ARRAY.search(cleaned)
    if match:
        cleaned = match.group(0)
    try:
        data = json.loads(cleaned)
        return _segments_adapter.validate_python(data)
    except (json.JSONDecodeError, ValidationError) as exc:
        raise ProviderResponseError(
            f"Unparseable transcription response: {exc}",
            preview=response_text[:200],
        ) from exc


def shift_segments(segments: list[RawSegment], offset: float) -> list[RawSegment]:
    """Make chunk-relative timestamps absolute."""
    if not offset:
        return segments
    return [
        s.model_copy(update={"start_time": s.start_time + offset, "end_time": s.end_time + offset})
        for s in segments
    ]


class GeminiProvider:
    """TranscriptionProvider backed by Gemini models through litellm.

    Args:
        api_key: Gemini API key.
        transcription_model: litellm id used for audio transcription.
        text_model: litellm id used for enhancement and redaction.
        timeout: Per-request timeout in seconds.
    """

    name = "gemini"

    def __init__(
        self,
        api_key: str,
        transcription_model: str = "gemini/gemini-2.0-flash",
        text_model: str = "gemini/gemini-2.0-flash",
        timeout: int = 600,
    ) -> None:
        self._api_key = api_key
        self._transcription_model = transcription_model
        self._text_model = text_model
        self._timeout = timeout
        self._instructor: Any | None = None

    def _structured_client(self) -> Any:
        if self._instructor is None:
            import instructor
            import litellm

            self._instructor = instructor.from_litellm(litellm.acompletion)
        return self._instructor

    async def transcribe(
        self,
        file_path: Path,
        mime_type: str,
        *,
        chunk_index: int = 0,
        timestamp_offset: float = 0.0,
        context: str | None = None,
    ) -> TranscriptionResult:
        import litellm

        audio = await asyncio.to_thread(file_path.read_bytes)
        encoded = base64.b64encode(audio).decode("ascii")
        prompt = TRANSCRIBE_PROMPT.format(
            context=CONTEXT_BLOCK.format(context=context) if context else ""
        )

        response = await litellm.acompletion(
            model=self._transcription_model,
            api_key=self._api_key,
            messages=[
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": prompt},
                        {
                            "type": "file",
                            "file": {"file_data": f"data:{mime_type};base64,{encoded}"},
                        },
                    ],
                }
            ],
            max_tokens=MAX_OUTPUT_TOKENS,
            temperature=0.0,
            timeout=self._timeout,
        )
        text = response.choices[0].message.content or ""
        segments = shift_segments(parse_segments(text), timestamp_offset)
        logger.info(
            "gemini.transcribed",
            chunk_index=chunk_index,
            offset=timestamp_offset,
            segments=len(segments),
            bytes=len(audio),
        )
        return TranscriptionResult(segments=segments)

    async def enhance(self, text: str) -> EnhancementResult:
        return await self._structured_client().chat.completions.create(
            model=self._text_model,
            api_key=self._api_key,
            response_model=EnhancementResult,
            messages=[
                {"role": "system", "content": ENHANCE_PROMPT},
                {"role": "user", "content": f"Transcript:\n{text}"},
            ],
            temperature=0.1,
            timeout=self._timeout,
        )

    async def redact(self, text: str) -> RedactionResult:
        return await self._structured_client().chat.completions.create(
            model=self._text_model,
            api_key=self._api_key,
            response_model=RedactionResult,
            messages=[
                {"role": "system", "content": REDACT_PROMPT},
                {"role": "user", "content": f"Transcript:\n{text}"},
            ],
            temperature=0.0,
            timeout=self._timeout,
        )
