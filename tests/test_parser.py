"""Unit tests for transcript parser."""
import pytest
from tasksync.ingest.parser import (
    parse_transcript,
    has_valid_transcript_format,
    normalize_records,
    participants_from_turns,
    render_turns,
    LINE_RE,
    UNKNOWN_SPEAKER,
)


def test_line_re_matches_valid_line():
    assert LINE_RE.match("[00:00:00] Alex: Hello world") is not None
    assert LINE_RE.match("[01:23:45] Speaker Name: Some text here") is not None


def test_line_re_rejects_invalid():
    assert LINE_RE.match("plain text") is None
    assert LINE_RE.match("[00:00:00] No colon") is None
    assert LINE_RE.match("[00:00] Alex: Short timestamp") is None


def test_parse_transcript_valid():
    text = "[00:00:00] Alex: Hello.\n[00:00:05] Sam: Hi there."
    turns = parse_transcript(text)
    assert len(turns) == 2
    assert turns[0].timestamp == "00:00:00"
    assert turns[0].speaker == "Alex"
    assert turns[0].text == "Hello."
    assert turns[1].speaker == "Sam"
    assert turns[1].line_no == 2


def test_parse_transcript_continuation_line():
    text = "[00:00:00] Alex: Line one\n  continuation here"
    turns = parse_transcript(text)
    assert len(turns) == 1
    assert turns[0].text == "Line one continuation here"


def test_parse_plain_speaker_lines():
    turns = parse_transcript("Sarah: I'll fix the login bug.\nMike: Sounds good.")
    assert [t.speaker for t in turns] == ["Sarah", "Mike"]
    assert turns[0].timestamp == ""


def test_parse_webvtt_strips_cues_and_tags():
    text = (
        "WEBVTT\n\n"
        "1\n"
        "00:00:01.000 --> 00:00:04.000\n"
        "<v Sarah Jones>SP-30 is <b>done</b></v>\n\n"
        "2\n"
        "00:00:05.000 --> 00:00:07.000\n"
        "<v Mike>Great.</v>\n"
    )
    turns = parse_transcript(text)
    assert [t.speaker for t in turns] == ["Sarah Jones", "Mike"]
    assert turns[0].text == "SP-30 is done"
    assert turns[0].timestamp == "00:00:01.000"


def test_parse_transcript_empty():
    assert parse_transcript("") == []
    assert parse_transcript("   \n\n  ") == []


def test_orphan_line_gets_unknown_speaker():
    turns = parse_transcript("some preamble\n[00:00:01] Alex: hi")
    assert turns[0].speaker == UNKNOWN_SPEAKER
    assert participants_from_turns(turns) == ["Alex"]


def test_has_valid_transcript_format_true():
    assert has_valid_transcript_format("[00:00:00] Alex: Hello") is True
    assert has_valid_transcript_format("junk\n[00:00:00] A: x\nmore") is True


def test_has_valid_transcript_format_false():
    assert has_valid_transcript_format("") is False
    assert has_valid_transcript_format("no speaker here") is False
    assert has_valid_transcript_format("  \n  ") is False


@pytest.mark.parametrize(
    "records",
    [
        [("Sarah", "Fix the <i>login</i> bug"), ("Mike", "ok")],
        [{"speaker": "Sarah", "text": "Fix the <i>login</i> bug"}, {"speaker": "Mike", "text": "ok"}],
    ],
)
def test_normalize_records(records):
    turns = normalize_records(records)
    assert [t.speaker for t in turns] == ["Sarah", "Mike"]
    assert turns[0].text == "Fix the login bug"


def test_normalize_records_voice_tag_and_empty_text():
    turns = normalize_records([("", "<v Priya>Deploy is done</v>"), ("Mike", "   ")])
    assert len(turns) == 1
    assert turns[0].speaker == "Priya"
    assert turns[0].text == "Deploy is done"


def test_participants_dedupe_case_insensitive_and_render():
    turns = normalize_records([("Sarah", "a"), ("sarah", "b"), ("Mike", "c")])
    assert participants_from_turns(turns) == ["Sarah", "Mike"]
    assert render_turns(turns[:1]) == "Sarah: a"
