"""Segment ordering and per-part prompt construction."""

import re
from dataclasses import dataclass
from typing import Optional

SEGMENT_KEY_PATTERN = re.compile(r"^part([123])-q(.+)$")

MODEL_ANSWER_WORDS = {1: (30, 40), 2: (140, 160), 3: (60, 80)}


@dataclass(frozen=True)
class Segment:
    """One recorded answer, identified by its segment key."""

    segment_key: str
    part_number: int
    question_id: str
    question_number: int
    question_text: str


def parse_segment_key(segment_key: str) -> Optional[tuple[int, str]]:
    match = SEGMENT_KEY_PATTERN.match(segment_key)
    if not match:
        return None
    return int(match.group(1)), match.group(2)


def group_segments(segment_keys, questions: Optional[dict] = None) -> dict[int, list[Segment]]:
    """
    Group segment keys by part, each part in explicit question order.

    Args:
        segment_keys: Keys like "part2-q7"
        questions: Optional segment key -> {question_number, question_text}

    Returns:
        Part number -> ordered segments; parts without audio are absent
    """
    questions = questions or {}
    grouped: dict[int, list[Segment]] = {}
    for key in segment_keys:
        parsed = parse_segment_key(key)
        if parsed is None:
            continue
        part, question_id = parsed
        info = questions.get(key) or {}
        number = info.get("question_number")
        if number is None:
            number = int(question_id) if question_id.isdigit() else 0
        grouped.setdefault(part, []).append(
            Segment(
                segment_key=key,
                part_number=part,
                question_id=question_id,
                question_number=int(number),
                question_text=info.get("question_text") or "",
            )
        )

    for segments in grouped.values():
        segments.sort(key=lambda s: (s.question_number, s.segment_key))
    return dict(sorted(grouped.items()))


def _output_contract(part: int) -> str:
    low, high = MODEL_ANSWER_WORDS[part]
    return f"""## OUTPUT
Return ONLY a JSON object with this shape:
{{
  "part_number": {part},
  "part_band": 6.5,
  "criteria": {{
    "fluency_coherence": {{"band": 6.5, "feedback": "...", "strengths": [], "weaknesses": [], "suggestions": []}},
    "lexical_resource": {{"band": 6.0, "feedback": "...", "strengths": [], "weaknesses": [], "suggestions": []}},
    "grammatical_range": {{"band": 6.0, "feedback": "...", "strengths": [], "weaknesses": [], "suggestions": []}},
    "pronunciation": {{"band": 6.0, "feedback": "...", "strengths": [], "weaknesses": [], "suggestions": []}}
  }},
  "part_summary": "...",
  "transcripts": [{{"segment_key": "...", "question_number": 1, "question_text": "...", "transcript": "..."}}],
  "modelAnswers": [{{"segment_key": "...", "question_number": 1, "question": "...", "candidate_response": "...", "model_answer": "..."}}],
  "lexical_upgrades": [{{"original": "...", "upgraded": "...", "context": "..."}}]
}}
Bands are 0-9 in steps of 0.5. Each model answer is {low}-{high} words."""


def _header(part: int, metadata: dict) -> str:
    lines = [
        f"You are an IELTS Speaking examiner evaluating Part {part} only.",
        f"Topic: {metadata.get('topic') or 'General'} | Difficulty: {metadata.get('difficulty') or 'standard'}",
    ]
    if part == 2 and metadata.get("fluency_flag"):
        lines.append(
            "FLUENCY FLAG: the Part 2 long turn was much shorter than two minutes; "
            "reflect this in fluency_coherence."
        )
    return "\n".join(lines)


def build_audio_prompt(part: int, segments: list[Segment], metadata: Optional[dict] = None) -> str:
    """Prompt for a part evaluated from audio clips sent in the same order."""
    metadata = metadata or {}
    mapping = "\n".join(
        f'AUDIO_{index}: "{s.segment_key}" -> Question {s.question_number}: "{s.question_text}"'
        for index, s in enumerate(segments)
    )
    return f"""{_header(part, metadata)}

The {len(segments)} audio clips that follow are in this exact order:
{mapping}

Transcribe each clip verbatim into "transcripts" using its segment_key, then score the part.

{_output_contract(part)}"""


def build_text_prompt(
    part: int,
    segments: list[Segment],
    transcripts: dict,
    metadata: Optional[dict] = None,
) -> str:
    """Prompt for a part evaluated from speech-recognition transcripts."""
    metadata = metadata or {}
    blocks = []
    for s in segments:
        entry = transcripts.get(s.segment_key) or {}
        text = entry.get("text", "") if isinstance(entry, dict) else str(entry)
        seconds = round((entry.get("duration_ms") or 0) / 1000) if isinstance(entry, dict) else 0
        words = len(text.split())
        wpm = round(words / seconds * 60) if seconds else 0
        blocks.append(
            f"### {s.segment_key}\n"
            f"Question {s.question_number}: {s.question_text}\n"
            f'Transcript: "{text}"\n'
            f"Duration: {seconds}s | Words: {words} | WPM: {wpm}"
        )
    body = "\n\n".join(blocks)
    return f"""{_header(part, metadata)}

{body}

These transcripts come from automatic speech recognition and may contain minor errors.
Judge content, vocabulary and grammar from the text. Pronunciation cannot be heard:
estimate it from the complexity of the language (assume Band 6 unless the text suggests otherwise).
Copy each transcript into "transcripts" unchanged.

{_output_contract(part)}"""
