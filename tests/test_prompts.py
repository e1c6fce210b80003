"""Tests for segment ordering and prompt construction."""

from speakeval.services.prompts import (
    build_audio_prompt,
    build_text_prompt,
    group_segments,
    parse_segment_key,
)


def test_parse_segment_key():
    assert parse_segment_key("part2-q7") == (2, "7")
    assert parse_segment_key("part1-qintro") == (1, "intro")
    assert parse_segment_key("part4-q1") is None
    assert parse_segment_key("intro") is None


def test_group_segments_orders_by_question_number():
    grouped = group_segments(
        ["part2-q1", "part1-q10", "part1-q2", "bogus"],
        questions={"part1-q10": {"question_number": 1, "question_text": "Where do you live?"}},
    )

    assert list(grouped) == [1, 2]
    assert [s.segment_key for s in grouped[1]] == ["part1-q10", "part1-q2"]
    assert grouped[1][0].question_text == "Where do you live?"
    assert grouped[1][1].question_number == 2


def test_parts_without_audio_are_absent():
    assert list(group_segments(["part3-q1"])) == [3]


def test_audio_prompt_maps_clips_in_order():
    segments = group_segments(["part1-q2", "part1-q1"])[1]
    prompt = build_audio_prompt(1, segments, {"topic": "Hometown"})

    assert 'AUDIO_0: "part1-q1" -> Question 1' in prompt
    assert 'AUDIO_1: "part1-q2" -> Question 2' in prompt
    assert "Topic: Hometown" in prompt
    assert "Each model answer is 30-40 words." in prompt


def test_fluency_flag_only_applies_to_part_two():
    metadata = {"fluency_flag": True}
    part1 = build_audio_prompt(1, group_segments(["part1-q1"])[1], metadata)
    part2 = build_audio_prompt(2, group_segments(["part2-q1"])[2], metadata)

    assert "FLUENCY FLAG" not in part1
    assert "FLUENCY FLAG" in part2


def test_text_prompt_includes_transcript_statistics():
    segments = group_segments(["part1-q1"])[1]
    prompt = build_text_prompt(
        1,
        segments,
        {"part1-q1": {"text": "I live in a small town", "duration_ms": 3000}},
    )

    assert 'Transcript: "I live in a small town"' in prompt
    assert "Duration: 3s | Words: 6 | WPM: 120" in prompt
    assert "Pronunciation cannot be heard" in prompt


def test_text_prompt_tolerates_missing_transcript():
    segments = group_segments(["part3-q1"])[3]
    prompt = build_text_prompt(3, segments, {})
    assert "Words: 0 | WPM: 0" in prompt
