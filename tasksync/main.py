import logging
import os
from functools import lru_cache
from typing import Optional

from fastapi import Depends, FastAPI, File, Form, HTTPException, Request, UploadFile
from starlette.concurrency import run_in_threadpool

from tasksync.core.config import settings
from tasksync.core.services import OpenAICompletionService, OpenAIEmbeddingService
from tasksync.guardrails.errors import TaskSyncError, as_http_500, as_http_error
from tasksync.guardrails.rate_limit import SimpleRateLimiter
from tasksync.ingest.parser import has_valid_transcript_format
from tasksync.match.similarity_index import SimilarityIndex, recently_modified
from tasksync.models.schemas import (
    CounterResetRequest,
    CounterResponse,
    IndexResponse,
    ProcessRequest,
    RunResult,
)
from tasksync.observability.middleware import RequestTimingMiddleware, current_request_id
from tasksync.pipeline.engine import TaskSyncEngine
from tasksync.rag.retriever import TranscriptChunkStore
from tasksync.store.counter_store import FileCounterStore
from tasksync.store.task_store import JsonFileTaskStore

logger = logging.getLogger(__name__)


# -------------------------
# App setup
# -------------------------

app = FastAPI(title="Meeting Task Sync")
app.add_middleware(RequestTimingMiddleware)

rate_limiter = SimpleRateLimiter(
    max_requests=settings.rate_limit_requests,
    window_seconds=settings.rate_limit_window_seconds,
)


@lru_cache(maxsize=1)
def get_engine() -> TaskSyncEngine:
    """Engine over the JSON task store and file counter under DATA_ROOT, with OpenAI services and Qdrant collections from settings. Built once per process; tests override this dependency.
    Why available: Single wiring point between the transport and the engine."""
    os.makedirs(settings.data_root, exist_ok=True)
    embedding_service = OpenAIEmbeddingService()
    return TaskSyncEngine(
        JsonFileTaskStore(os.path.join(settings.data_root, "tasks.json")),
        FileCounterStore(os.path.join(settings.data_root, "counters.json")),
        completion_service=OpenAICompletionService(),
        embedding_service=embedding_service,
        index=SimilarityIndex(embedding_service),
        chunk_store=TranscriptChunkStore(embedding_service),
        data_root=settings.data_root,
    )


def _run(engine: TaskSyncEngine, transcript, transcript_id, participants, apply) -> RunResult:
    try:
        result = engine.process(transcript, transcript_id, participants=participants, apply=apply)
    except TaskSyncError as e:
        logger.warning("process_failed", extra={"request_id": current_request_id(), "error": str(e)})
        raise as_http_error(e)
    except Exception as e:
        raise as_http_500(e)
    logger.info(
        "process_done",
        extra={"request_id": current_request_id(), "transcript_id": result.summary.transcript_id},
    )
    return result


# -------------------------
# Health
# -------------------------

@app.get("/health")
def health():
    """Returns 200 OK with status. Used by load balancers and schedulers to check the API is up before triggering a run."""
    return {"status": "ok"}


# -------------------------
# Process transcripts
# -------------------------

@app.post("/process", response_model=RunResult)
def process(req: ProcessRequest, request: Request, engine: TaskSyncEngine = Depends(get_engine)):
    """Extract and reconcile tasks from one transcript (raw text or speaker/text records). With apply=true (default) the mutations are written to the task store; the response lists decisions, status events, mutations and per-mutation reports.
    Why available: Manual trigger for a run; a scheduler calls the same endpoint."""
    rate_limiter.check(request)
    if req.transcript and req.records:
        raise HTTPException(status_code=400, detail="Send either transcript or records, not both")
    if req.transcript:
        transcript = req.transcript
        if len(transcript.encode("utf-8")) > settings.max_transcript_kb * 1024:
            raise HTTPException(status_code=413, detail=f"Transcript exceeds {settings.max_transcript_kb} KB")
    elif req.records:
        transcript = req.records
    else:
        raise HTTPException(status_code=400, detail="Transcript is empty")
    return _run(engine, transcript, req.transcript_id, req.participants, req.apply)


@app.post("/process/upload", response_model=RunResult)
async def process_upload(
    request: Request,
    file: UploadFile = File(...),
    transcript_id: Optional[str] = Form(None),
    participants: str = Form(""),
    engine: TaskSyncEngine = Depends(get_engine),
):
    """Same as /process for an uploaded transcript file; participants is a comma-separated list."""
    rate_limiter.check(request)
    content = await file.read()
    if len(content) > settings.max_transcript_kb * 1024:
        raise HTTPException(status_code=413, detail=f"{file.filename} exceeds {settings.max_transcript_kb} KB")
    text = content.decode("utf-8", errors="replace")
    if not has_valid_transcript_format(text):
        raise HTTPException(
            status_code=400,
            detail="Incorrect file. Transcripts need speaker labels (e.g. [HH:MM:SS] Speaker: text, or WebVTT <v Speaker>).",
        )
    names = [p.strip() for p in participants.split(",") if p.strip()]
    return await run_in_threadpool(_run, engine, text, transcript_id or file.filename, names, True)


# -------------------------
# Similarity index maintenance
# -------------------------

@app.post("/index/rebuild", response_model=IndexResponse)
def index_rebuild(engine: TaskSyncEngine = Depends(get_engine)):
    """Drop and regenerate the similarity index from the task store."""
    try:
        indexed = engine.index.rebuild(engine.task_store.all_tasks())
    except Exception as e:
        raise as_http_500(e)
    return IndexResponse(indexed=indexed, degraded=engine.index.degraded)


@app.post("/index/sync", response_model=IndexResponse)
def index_sync(engine: TaskSyncEngine = Depends(get_engine)):
    """Re-embed tasks modified within the sync window whose indexed copy is missing or stale."""
    try:
        indexed = engine.index.synchronize(recently_modified(engine.task_store.all_tasks()))
    except Exception as e:
        raise as_http_500(e)
    return IndexResponse(indexed=indexed, degraded=engine.index.degraded)


# -------------------------
# Ticket counter
# -------------------------

def _counter_response(engine: TaskSyncEngine) -> CounterResponse:
    count = engine.allocator.current_count()
    return CounterResponse(key=engine.allocator.key, count=count, next_ticket_id=engine.allocator.format(count + 1))


@app.get("/counter", response_model=CounterResponse)
def counter(engine: TaskSyncEngine = Depends(get_engine)):
    engine.initialize()
    return _counter_response(engine)


@app.post("/counter/reset", response_model=CounterResponse)
def counter_reset(req: CounterResetRequest, engine: TaskSyncEngine = Depends(get_engine)):
    """Operator reset of the ticket counter; the next allocation becomes PREFIX-{value+1}. A value below the highest stored ticket number would hand out existing ids again, so it is refused with 409 unless force is set."""
    highest = engine.allocator.max_existing_number()
    if req.value < highest and not req.force:
        raise HTTPException(
            status_code=409,
            detail=f"{engine.allocator.format(highest)} already exists; reset to at least {highest} or pass force=true",
        )
    engine.allocator.reset(req.value)
    return _counter_response(engine)
