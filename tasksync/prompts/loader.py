"""
Prompt templates live in tasksync/prompts/{version}/{component}.yaml with a `system` and a `user` key.
PROMPT_VERSION (default v1) picks the directory. Placeholders are written <<NAME>>.
"""
import re
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import FrozenSet, Optional, Tuple

import yaml

_PROMPTS_DIR = Path(__file__).resolve().parent
_PLACEHOLDER = re.compile(r"<<([A-Z_]+)>>")


@dataclass(frozen=True)
class PromptTemplate:
    component: str
    version: str
    system: str
    user: str

    @property
    def placeholders(self) -> FrozenSet[str]:
        return frozenset(_PLACEHOLDER.findall(self.system + "\n" + self.user))

    def render(self, **values) -> Tuple[str, str]:
        """Fill every <<NAME>> from values (keys are case-insensitive) in one pass and return (system, user). Substituted text is never scanned again, so a transcript quoting <<CONTEXT>> stays literal. Raises ValueError naming any placeholder left without a value.
        Why available: Task finder, adjudication and merge prompts all go through here, so a renamed placeholder fails loudly instead of sending a half-filled prompt."""
        filled = {k.upper(): "" if v is None else str(v) for k, v in values.items()}
        missing = sorted(self.placeholders - set(filled))
        if missing:
            raise ValueError(f"prompt {self.version}/{self.component} is missing values for {', '.join(missing)}")

        def sub(text: str) -> str:
            return _PLACEHOLDER.sub(lambda m: filled[m.group(1)], text)

        return sub(self.system), sub(self.user)


@lru_cache(maxsize=32)
def _load(component: str, version: str) -> PromptTemplate:
    path = _PROMPTS_DIR / version / f"{component}.yaml"
    if not path.exists():
        raise FileNotFoundError(f"Prompt file not found: {path}")
    with path.open(encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    system = str(data.get("system") or "").strip()
    if not system:
        raise ValueError(f"prompt {version}/{component} has no system prompt")
    return PromptTemplate(component, version, system, str(data.get("user") or "").strip())


def load_prompt(component: str, version: Optional[str] = None) -> PromptTemplate:
    """Template for component (task_finder, task_adjudicate, rag_update, rag_create) at the configured prompt version."""
    if version is None:
        from tasksync.core.config import settings
        version = settings.prompt_version or "v1"
    return _load(component, version)
