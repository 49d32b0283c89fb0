import logging
from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from ..auth import require_api_key
from ..models import GenerationRequest, GenerateResponse, StatusResponse, HealthResponse
from ..services.executor import DuplicateTask, TaskExecutor
from ..storage.repo import TaskStore

logger = logging.getLogger(__name__)

router = APIRouter()

def get_executor(request: Request) -> TaskExecutor:
    return request.app.state.executor

def get_store(request: Request) -> TaskStore:
    return request.app.state.store

@router.get("/health", response_model=HealthResponse)
async def health(executor: TaskExecutor = Depends(get_executor)):
    usage = executor.monitor.snapshot()
    return HealthResponse(
        status="healthy",
        service="AI Image Generation Proxy",
        tasks=usage.activeTasks,
        processed=usage.totalProcessed,
        storedTasks=len(executor.store),
        resources=usage,
    )

@router.post("/api/generate", response_model=GenerateResponse, response_model_exclude_none=True)
async def generate(payload: GenerationRequest, executor: TaskExecutor = Depends(get_executor)):
    require_api_key(payload)
    logger.info("Starting sync generation with model: %s, taskId: %s", payload.model, payload.task_id)
    try:
        outcome = await executor.run_and_wait(payload, executor.settings.attempt_timeout_seconds)
    except DuplicateTask as exc:
        raise HTTPException(status_code=409, detail=str(exc))

    if outcome is None:
        return _error(504, payload.task_id, "Request timeout - API took too long to respond")
    if outcome.success:
        return GenerateResponse(success=True, taskId=payload.task_id, imageUrl=outcome.image_result)
    if outcome.error_kind == "timeout":
        return _error(504, payload.task_id, outcome.error)
    if outcome.error_kind == "provider_error":
        return _error(400, payload.task_id, outcome.error)
    return GenerateResponse(success=False, taskId=payload.task_id, error=outcome.error)

@router.post("/api/generate/async", response_model=GenerateResponse, response_model_exclude_none=True)
async def generate_async(payload: GenerationRequest, executor: TaskExecutor = Depends(get_executor)):
    require_api_key(payload)
    logger.info("Starting async generation with model: %s, taskId: %s", payload.model, payload.task_id)
    if payload.callback_url:
        logger.info("[%s] Callback URL: %s", payload.task_id, payload.callback_url)
    try:
        executor.submit(payload)
    except DuplicateTask as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    return GenerateResponse(success=True, taskId=payload.task_id, message="Generation started")

@router.get("/api/status/{task_id}", response_model=StatusResponse, response_model_exclude_none=True)
async def get_status(task_id: str, store: TaskStore = Depends(get_store)):
    rec = store.get(task_id)
    if rec is None or not rec.terminal:
        return StatusResponse(success=False, status="processing", message="Still generating...")
    if rec.outcome.success:
        return StatusResponse(success=True, status="completed", imageUrl=rec.outcome.image_result)
    return StatusResponse(success=False, status="failed", error=rec.outcome.error)

def _error(status_code: int, task_id: str, error: str) -> JSONResponse:
    body = GenerateResponse(success=False, taskId=task_id, error=error)
    return JSONResponse(status_code=status_code, content=body.model_dump(exclude_none=True))
