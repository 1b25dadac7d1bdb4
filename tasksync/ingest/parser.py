import re
import io
from dataclasses import dataclass
from typing import Any, Iterable, Iterator, List, Mapping, Sequence, Tuple, Union


LINE_RE = re.compile(r"^\[(\d{2}:\d{2}:\d{2})\]\s*([^:]{1,60}):\s*(.+)$")
VOICE_RE = re.compile(r"^<v\s+([^>]{1,60})>(.*?)(?:</v>)?$", re.IGNORECASE)
PLAIN_RE = re.compile(r"^([A-Z][\w .'\-]{0,58}?):\s+(.+)$")
CUE_TIMING_RE = re.compile(r"^(\d{2}:)?\d{2}:\d{2}[.,]\d{3}\s+-->\s+(\d{2}:)?\d{2}:\d{2}[.,]\d{3}")
TAG_RE = re.compile(r"</?[a-zA-Z][^>]*>")

UNKNOWN_SPEAKER = "Unknown"

Record = Union[Tuple[str, str], Sequence[str], Mapping[str, Any]]


@dataclass
class Turn:
    """A single normalized utterance: line number, timestamp (may be empty), speaker name, markup-free text, and raw line string.
    Why available: Standard unit handed to the status detector, the extractor prompt and the chunker."""

    line_no: int
    timestamp: str
    speaker: str
    text: str
    raw: str


def strip_markup(text: str) -> str:
    """Remove HTML/WebVTT tags and collapse whitespace."""
    return re.sub(r"\s+", " ", TAG_RE.sub(" ", text or "")).strip()


def _match_line(line: str):
    """Return (timestamp, speaker, text) for a speaker line, or None for continuation/noise lines."""
    m = LINE_RE.match(line)
    if m:
        return m.group(1), m.group(2).strip(), m.group(3).strip()
    m = VOICE_RE.match(line)
    if m:
        return "", m.group(1).strip(), m.group(2).strip()
    m = PLAIN_RE.match(line)
    if m and not m.group(1).lower().startswith(("http", "note", "webvtt")):
        return "", m.group(1).strip(), m.group(2).strip()
    return None


def _is_noise(line: str) -> bool:
    s = line.strip()
    return s.upper().startswith("WEBVTT") or s.isdigit() or bool(CUE_TIMING_RE.match(s))


def parse_transcript_stream(lines: Iterable[str]) -> Iterator[Turn]:
    """Streaming transcript parser: consumes an iterable of lines and yields Turn objects incrementally. Accepts [HH:MM:SS] Speaker: text, WebVTT <v Speaker>text</v>, and plain Speaker: text; skips WebVTT headers, cue ids and timing lines; attaches continuation lines to the previous turn.
    Why available: Single line normalizer for every transcript shape the engine receives."""
    current: Turn | None = None
    pending_ts = ""

    for idx, line in enumerate(lines, start=1):
        line = line.rstrip("\n")
        if not line.strip():
            continue
        if _is_noise(line):
            m = CUE_TIMING_RE.match(line.strip())
            if m:
                pending_ts = line.strip().split()[0]
            continue

        hit = _match_line(line.strip())
        if hit:
            # flush previous
            if current is not None and current.text:
                yield current

            ts, speaker, msg = hit
            current = Turn(
                line_no=idx,
                timestamp=ts or pending_ts,
                speaker=strip_markup(speaker) or UNKNOWN_SPEAKER,
                text=strip_markup(msg),
                raw=line,
            )
            pending_ts = ""
        else:
            text = strip_markup(line)
            if not text:
                continue
            # continuation line -> attach to current if exists
            if current is not None:
                current.text = (current.text + " " + text).strip()
                current.raw += "\n" + line
            else:
                # orphan line -> create synthetic first turn
                current = Turn(
                    line_no=idx,
                    timestamp=pending_ts,
                    speaker=UNKNOWN_SPEAKER,
                    text=text,
                    raw=line,
                )

    if current is not None and current.text:
        yield current


def parse_transcript(text: str) -> List[Turn]:
    """Non-streaming wrapper around parse_transcript_stream."""
    return list(parse_transcript_stream(io.StringIO(text or "")))


def normalize_records(records: Iterable[Record]) -> List[Turn]:
    """Turn pre-split records into Turns: accepts (speaker, text) pairs or mappings with speaker/text keys. Markup is stripped, and a <v Name> tag inside the text overrides an empty speaker. Records whose text is empty after stripping are dropped.
    Why available: Transcript sources that already split lines hand them over this way instead of as raw text."""
    out: List[Turn] = []
    for idx, rec in enumerate(records, start=1):
        if isinstance(rec, Mapping):
            speaker = str(rec.get("speaker") or "")
            text = str(rec.get("text") or "")
            ts = str(rec.get("timestamp") or "")
        else:
            speaker, text = str(rec[0] or ""), str(rec[1] or "")
            ts = ""
        raw = text
        m = VOICE_RE.match(text.strip())
        if m:
            speaker = speaker or m.group(1)
            text = m.group(2)
        text = strip_markup(text)
        if not text:
            continue
        out.append(
            Turn(
                line_no=idx,
                timestamp=ts,
                speaker=strip_markup(speaker) or UNKNOWN_SPEAKER,
                text=text,
                raw=raw,
            )
        )
    return out


def has_valid_transcript_format(text: str) -> bool:
    """Return True if the text has at least one recognizable speaker line.
    Why available: Used to reject empty or malformed transcripts before any LLM call."""
    if not (text or "").strip():
        return False
    for line in text.splitlines():
        s = line.strip()
        if s and not _is_noise(s) and _match_line(s):
            return True
    return False


def participants_from_turns(turns: Iterable[Turn]) -> List[str]:
    """Speakers in order of first appearance, de-duplicated case-insensitively, Unknown excluded."""
    seen = set()
    out: List[str] = []
    for t in turns:
        key = t.speaker.lower()
        if t.speaker == UNKNOWN_SPEAKER or key in seen:
            continue
        seen.add(key)
        out.append(t.speaker)
    return out


def render_turns(turns: Iterable[Turn]) -> str:
    """Speaker: text lines, one per turn. Used as the transcript body of prompts and as the chunker input."""
    return "\n".join(f"{t.speaker}: {t.text}" for t in turns)
