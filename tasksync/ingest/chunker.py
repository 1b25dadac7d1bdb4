import hashlib
from dataclasses import dataclass
from typing import Dict, Any, Iterator, Iterable, List, Optional
from .parser import Turn


@dataclass
class Chunk:
    """A contiguous, overlapping segment of a transcript with metadata (transcript id, chunk index, line range, speakers, content hash).
    Why available: Standard unit for transcript retrieval; payload is stored in Qdrant or the run-scoped cache."""

    chunk_id: str
    text: str
    payload: Dict[str, Any]


BOUNDARIES = ("\n\n", "\n", ". ", "? ", "! ", " ")


def _split_long_text(text: str, chunk_size: int, overlap: int) -> List[str]:
    """Window text into pieces of at most chunk_size, cutting at the strongest boundary (paragraph, line, sentence, word) found in the second half of the window."""
    pieces: List[str] = []
    start = 0
    n = len(text)
    while start < n:
        end = min(start + chunk_size, n)
        if end < n:
            window = text[start:end]
            for sep in BOUNDARIES:
                cut = window.rfind(sep)
                if cut >= chunk_size // 2:
                    end = start + cut + len(sep)
                    break
        piece = text[start:end].strip()
        if piece:
            pieces.append(piece)
        if end >= n:
            break
        nxt = max(end - overlap, 0)
        # do not start mid-word
        space = text.find(" ", nxt, end)
        nxt = space + 1 if space != -1 else nxt
        start = nxt if start < nxt < end else end
    return pieces


def chunk_turns_stream(
    *,
    transcript_id: str,
    turns: Iterable[Turn],
    chunk_size: int = 1000,
    chunk_overlap: int = 200,
) -> Iterator[Chunk]:
    """Streaming chunker: packs whole `Speaker: text` turns into chunks of at most chunk_size characters; the next chunk starts with the trailing turns of the previous one (up to chunk_overlap characters). A single turn longer than chunk_size is windowed on its own.
    Why available: Used at context-indexing time so retrieval returns verbatim passages that never split a short utterance."""
    buf: List[Turn] = []
    chunk_index = 0

    def line_of(t: Turn) -> str:
        return f"{t.speaker}: {t.text}"

    def make(body: str, turns_in: List[Turn]) -> Chunk:
        nonlocal chunk_index
        chunk_index += 1
        cid = f"{transcript_id}:{chunk_index}"
        payload = {
            "transcript_id": transcript_id,
            "chunk_id": cid,
            "chunk_index": chunk_index,
            "line_start": turns_in[0].line_no,
            "line_end": turns_in[-1].line_no,
            "speakers": sorted({t.speaker for t in turns_in}),
            "content_hash": hashlib.sha256(body.encode("utf-8")).hexdigest(),
        }
        return Chunk(chunk_id=cid, text=body, payload=payload)

    def flush() -> Optional[Chunk]:
        """Build one chunk from the buffer and keep the overlap tail. Used by chunk_turns_stream when the buffer is full or at end."""
        nonlocal buf
        if not buf:
            return None
        body = "\n".join(line_of(t) for t in buf).strip()
        ch = make(body, buf)
        tail: List[Turn] = []
        size = 0
        for t in reversed(buf):
            size += len(line_of(t)) + 1
            if size > chunk_overlap:
                break
            tail.insert(0, t)
        # a tail equal to the whole buffer would repeat the chunk forever
        buf = tail if len(tail) < len(buf) else []
        return ch

    for t in turns:
        line = line_of(t)
        if len(line) > chunk_size:
            ch = flush()
            if ch:
                yield ch
            buf = []
            for piece in _split_long_text(line, chunk_size, chunk_overlap):
                yield make(piece, [t])
            continue
        current = sum(len(line_of(x)) + 1 for x in buf)
        if buf and current + len(line) > chunk_size:
            ch = flush()
            if ch:
                yield ch
            # overlap tail plus the new line may still not fit
            if buf and sum(len(line_of(x)) + 1 for x in buf) + len(line) > chunk_size:
                buf = []
        buf.append(t)

    ch = flush()
    if ch:
        yield ch


def chunk_turns(
    *,
    transcript_id: str,
    turns: List[Turn],
    chunk_size: int = 1000,
    chunk_overlap: int = 200,
) -> List[Chunk]:
    """Non-streaming API over chunk_turns_stream."""
    return list(
        chunk_turns_stream(
            transcript_id=transcript_id,
            turns=turns,
            chunk_size=chunk_size,
            chunk_overlap=chunk_overlap,
        )
    )


def chunk_text(
    transcript_id: str,
    text: str,
    chunk_size: int = 1000,
    chunk_overlap: int = 200,
) -> List[Chunk]:
    """Chunk raw text that has no speaker structure (notes, pasted minutes). Line numbers in the payload are 1-based line offsets into text."""
    chunks: List[Chunk] = []
    search_from = 0
    for i, piece in enumerate(_split_long_text(text or "", chunk_size, chunk_overlap), start=1):
        pos = text.find(piece, search_from)
        pos = pos if pos != -1 else search_from
        line_start = text.count("\n", 0, pos) + 1
        cid = f"{transcript_id}:{i}"
        chunks.append(
            Chunk(
                chunk_id=cid,
                text=piece,
                payload={
                    "transcript_id": transcript_id,
                    "chunk_id": cid,
                    "chunk_index": i,
                    "line_start": line_start,
                    "line_end": line_start + piece.count("\n"),
                    "speakers": [],
                    "content_hash": hashlib.sha256(piece.encode("utf-8")).hexdigest(),
                },
            )
        )
        search_from = pos + 1
    return chunks
