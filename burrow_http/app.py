import json
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Literal

from pydantic import BaseModel, ValidationError

from burrow import __version__
from burrow.errors import InvalidRequestError, SessionsError
from burrow.models import Task, TaskEvent
from burrow.service import SessionsService
from burrow.sse import format_sse

OWNER_HEADER = "X-Owner-Id"


class CreateTaskRequest(BaseModel):
    instruction: str


class PermissionReplyRequest(BaseModel):
    response: Literal["once", "always", "reject"]


def _task_body(task: Task) -> dict:
    return task.model_dump(mode="json")


async def _encode_events(events: AsyncIterator[TaskEvent]) -> AsyncIterator[bytes]:
    async for event in events:
        yield format_sse(event.kind, event.model_dump(mode="json"))


def create_sessions_http_app(service: SessionsService, *, include_docs: bool = True):
    try:
        from fastapi import APIRouter, FastAPI, Request
        from fastapi.exceptions import RequestValidationError
        from fastapi.responses import JSONResponse, Response, StreamingResponse
    except ModuleNotFoundError as exc:  # pragma: no cover - optional extra
        raise RuntimeError("FastAPI is required for the HTTP binding. Install burrow[http].") from exc

    docs_url = "/docs" if include_docs else None
    openapi_url = "/openapi.json" if include_docs else None

    @asynccontextmanager
    async def _lifespan(_app: FastAPI):
        await service.start()
        try:
            yield
        finally:
            await service.stop()

    app = FastAPI(
        title="Burrow",
        description="Sandboxed coding-agent sessions",
        version=__version__,
        docs_url=docs_url,
        openapi_url=openapi_url,
        lifespan=_lifespan,
    )

    def _problem(exc: SessionsError) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content=exc.to_problem_details().model_dump(exclude_none=True),
            media_type="application/problem+json",
        )

    @app.exception_handler(SessionsError)
    async def _handle_sessions_error(_request: Request, exc: SessionsError):
        return _problem(exc)

    @app.exception_handler(RequestValidationError)
    async def _handle_validation_error(_request: Request, exc: RequestValidationError):
        return _problem(InvalidRequestError(json.dumps(exc.errors(), ensure_ascii=False, default=str)))

    router = APIRouter()

    def _owner(request: Request) -> str:
        owner_id = (request.headers.get(OWNER_HEADER) or "").strip()
        if not owner_id:
            raise InvalidRequestError(f"{OWNER_HEADER} header is required")
        return owner_id

    async def _load(request: Request, model: type[BaseModel]):
        try:
            payload = await request.json()
        except ValueError as exc:
            raise InvalidRequestError("Request body must be valid JSON") from exc
        try:
            return model.model_validate(payload)
        except ValidationError as exc:
            raise InvalidRequestError(str(exc)) from exc

    @router.post("/tasks")
    async def create_task(request: Request):
        owner_id = _owner(request)
        payload = await _load(request, CreateTaskRequest)
        task = await service.create_task(payload.instruction, owner_id)
        return JSONResponse(status_code=201, content=_task_body(task))

    @router.get("/tasks")
    async def list_tasks(request: Request):
        owner_id = _owner(request)
        tasks = await service.list_tasks(owner_id)
        return JSONResponse(content={"tasks": [_task_body(task) for task in tasks]})

    @router.get("/tasks/{task_id}")
    async def get_task(request: Request, task_id: str):
        task = await service.get_task(task_id, _owner(request))
        return JSONResponse(content=_task_body(task))

    @router.post("/tasks/{task_id}:cancel")
    async def cancel_task(request: Request, task_id: str):
        task = await service.cancel_task(task_id, _owner(request))
        return JSONResponse(status_code=202, content=_task_body(task))

    @router.post("/tasks/{task_id}/permissions/{permission_id}")
    async def reply_permission(request: Request, task_id: str, permission_id: str):
        owner_id = _owner(request)
        payload = await _load(request, PermissionReplyRequest)
        await service.reply_permission(task_id, owner_id, permission_id, payload.response)
        return Response(status_code=204)

    @router.get("/tasks/{task_id}/events")
    async def stream_events(request: Request, task_id: str):
        events = await service.subscribe(task_id, _owner(request))
        return StreamingResponse(_encode_events(events), media_type="text/event-stream")

    app.include_router(router)
    return app


__all__ = ["OWNER_HEADER", "CreateTaskRequest", "PermissionReplyRequest", "create_sessions_http_app"]
