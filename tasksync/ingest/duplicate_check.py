"""
Processed-transcript ledger keyed by content hash.
Re-processing the same transcript maps its candidates back onto the tickets the first run created or updated.
"""
import hashlib
import json
import logging
import os
import threading
from typing import Any, Dict, Iterable, Optional

from tasksync.ingest.parser import Turn
from tasksync.models.schemas import Candidate
from tasksync.utils.text import normalize_for_compare

logger = logging.getLogger(__name__)

LEDGER_FILENAME = "processed_transcripts.json"
_lock = threading.Lock()


def content_hash(turns: Iterable[Turn]) -> str:
    """SHA-256 over normalized `speaker: text` lines, so markup or whitespace differences do not defeat the check.
    Why available: Identifies a transcript that was already reconciled, whatever the transport called it."""
    h = hashlib.sha256()
    for t in turns:
        h.update(f"{t.speaker.strip().lower()}\x1f{normalize_for_compare(t.text)}\x00".encode("utf-8"))
    return h.hexdigest()


def candidate_key(candidate: Candidate) -> str:
    """Stable key for 'the same candidate' across runs: normalized description plus assignee."""
    basis = f"{normalize_for_compare(candidate.description)}|{candidate.assignee.strip().lower()}"
    return hashlib.sha1(basis.encode("utf-8")).hexdigest()


def _ledger_path(data_root: str) -> str:
    return os.path.join(data_root, LEDGER_FILENAME)


def _read(path: str) -> Dict[str, Any]:
    if not os.path.isfile(path):
        return {"runs": {}}
    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError):
        logger.warning("ledger_unreadable", exc_info=True, extra={"path": path})
        return {"runs": {}}
    if not isinstance(data.get("runs"), dict):
        data["runs"] = {}
    return data


def get_processed_run(content_hash_hex: str, data_root: str) -> Optional[Dict[str, Any]]:
    """Return the ledger record of an earlier run over the same content, else None. Record keys: transcript_id, created (candidate_key -> ticket_id), updated (ticket_id -> [candidate_key])."""
    return _read(_ledger_path(data_root))["runs"].get(content_hash_hex)


def register_processed(content_hash_hex: str, record: Dict[str, Any], data_root: str) -> None:
    """Record (or extend) what a run created and updated for this content hash. Existing mappings are merged, never dropped."""
    path = _ledger_path(data_root)
    os.makedirs(data_root, exist_ok=True)
    with _lock:
        data = _read(path)
        prev = data["runs"].get(content_hash_hex) or {"created": {}, "updated": {}}
        created = {**prev.get("created", {}), **record.get("created", {})}
        updated = dict(prev.get("updated", {}))
        for ticket, keys in record.get("updated", {}).items():
            updated[ticket] = sorted(set(updated.get(ticket, [])) | set(keys))
        data["runs"][content_hash_hex] = {
            "transcript_id": record.get("transcript_id") or prev.get("transcript_id"),
            "created": created,
            "updated": updated,
        }
        tmp = path + ".tmp"
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
        os.replace(tmp, path)
