import html
import json
import sys
from pathlib import Path

import pytest

# Ensure repo root is on sys.path so `import tasksync...` works in tests
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

REPORT_SECTIONS = pytest.StashKey[list]()

_PRE_STYLE = "background:#0b1020;color:#cfe3ff;padding:10px;border-radius:8px;overflow:auto;"


def _as_text(payload) -> str:
    if hasattr(payload, "model_dump"):
        payload = payload.model_dump(mode="json")
    if isinstance(payload, str):
        return payload
    return json.dumps(payload, indent=2, ensure_ascii=False, sort_keys=True, default=str)


def _section_html(title: str, payloads: dict) -> str:
    parts = [f'<h4 style="margin:8px 0;">{html.escape(title)}</h4>']
    for label, payload in payloads.items():
        parts.append(
            f'<details style="margin:6px 0;"><summary><b>{html.escape(label)}</b></summary>'
            f'<pre style="{_PRE_STYLE}">{html.escape(_as_text(payload))}</pre></details>'
        )
    return '<div style="font-family: ui-monospace, Menlo, Consolas, monospace;">' + "".join(parts) + "</div>"


@pytest.fixture
def report_section(request):
    """add(title, **payloads): show payloads (API request/response, run summary, mutations) under this test in the pytest-html report."""

    def add(title: str, **payloads) -> None:
        # node._report_sections belongs to pytest (captured output)
        request.node.stash.setdefault(REPORT_SECTIONS, []).append((title, payloads))

    return add


@pytest.hookimpl(hookwrapper=True)
def pytest_runtest_makereport(item, call):
    outcome = yield
    rep = outcome.get_result()
    sections = item.stash.get(REPORT_SECTIONS, None)
    if rep.when != "call" or not sections or not item.config.pluginmanager.hasplugin("html"):
        return

    from pytest_html import extras as html_extras

    extras = getattr(rep, "extras", [])
    for title, payloads in sections:
        extras.append(html_extras.html(_section_html(title, payloads)))
    rep.extras = extras


# -------------------------
# Engine fixtures
# -------------------------

@pytest.fixture
def embedder():
    from fakes import FakeEmbedder

    return FakeEmbedder()


@pytest.fixture
def qdrant():
    from qdrant_client import QdrantClient

    client = QdrantClient(":memory:")
    yield client
    client.close()


@pytest.fixture
def index(embedder, qdrant):
    from tasksync.match.similarity_index import SimilarityIndex

    return SimilarityIndex(embedder, client=qdrant, collection="test_tasks", cache_ttl_seconds=0)


@pytest.fixture
def chunk_store(embedder, qdrant):
    from tasksync.rag.retriever import TranscriptChunkStore

    return TranscriptChunkStore(embedder, client=qdrant, collection="test_chunks")


@pytest.fixture
def make_engine(tmp_path, embedder, index, chunk_store):
    """Factory: engine over in-memory stores with the given completion service and seed tasks."""
    from tasksync.pipeline.engine import TaskSyncEngine
    from tasksync.store.counter_store import InMemoryCounterStore
    from tasksync.store.task_store import InMemoryTaskStore

    def _make(completion, tasks=(), counter_store=None):
        store = InMemoryTaskStore(list(tasks))
        for t in tasks:
            index.add_task(t)
        return TaskSyncEngine(
            store,
            counter_store or InMemoryCounterStore(),
            completion_service=completion,
            embedding_service=embedder,
            index=index,
            chunk_store=chunk_store,
            data_root=str(tmp_path / "data"),
            prefix="SP",
        )

    return _make
