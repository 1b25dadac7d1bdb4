import re
from typing import Tuple

INJECTION_PATTERNS = [
    r"ignore (?:all )?(?:previous|prior|above) instructions",
    r"disregard (?:the )?(?:previous|above|system)",
    r"system prompt",
    r"you are (?:now )?(?:chatgpt|an ai|a language model)",
    r"respond only with",
    r"output the following json",
    r"isMatch\"?\s*:\s*true",
    r"updatedDescription",
    r"\bTASK:\s",
]
_INJECTION_RE = [re.compile(p, re.IGNORECASE) for p in INJECTION_PATTERNS]


def detect_prompt_injection(text: str) -> Tuple[bool, str]:
    """Heuristic detector: returns (True, pattern) if transcript text contains instruction-like phrasing or fragments of the reply formats the engine parses (a spoken 'TASK:' block, 'isMatch: true', 'updatedDescription'). The excerpt is still used, with a security note in front of it.
    Why available: Transcripts are untrusted; a participant reading out a fake reply must not steer extraction or adjudication."""
    t = text or ""
    for rx in _INJECTION_RE:
        m = rx.search(t)
        if m:
            return True, m.group(0).strip()
    return False, ""
