from __future__ import annotations

import os
import uuid

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.cors import CORSMiddleware

from spendcube.errors import PipelineError
from spendcube.llm_provider import get_provider_info
from spendcube.models import HITLDecision
from spendcube.orchestrator import PipelineOrchestrator, session_summary
from spendcube.schemas import DecisionRequest, SubmitRecordsRequest, error_envelope, success_envelope


def _trace_id_from_request(request: Request) -> str:
    trace_id = getattr(request.state, "trace_id", None)
    if trace_id:
        return trace_id
    return uuid.uuid4().hex


def _error_response(
    request: Request,
    *,
    code: str,
    message: str,
    error_class: str,
    retryable: bool,
    status_code: int,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=error_envelope(
            code=code,
            message=message,
            error_class=error_class,
            retryable=retryable,
            trace_id=_trace_id_from_request(request),
        ),
    )


def create_app(orchestrator: PipelineOrchestrator | None = None) -> FastAPI:
    app = FastAPI(title="Spend Classification Pipeline API", version="0.1.0")
    pipeline = orchestrator or PipelineOrchestrator.from_env()
    app.state.pipeline = pipeline

    cors_origins = os.environ.get("CORS_ALLOW_ORIGINS", "http://127.0.0.1:5173,http://localhost:5173")
    allow_origins = [x.strip() for x in cors_origins.split(",") if x.strip()]
    if allow_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=allow_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    @app.middleware("http")
    async def add_trace_id(request: Request, call_next):
        incoming_trace_id = request.headers.get("x-trace-id", "").strip()
        request.state.trace_id = incoming_trace_id or uuid.uuid4().hex
        response = await call_next(request)
        response.headers["x-trace-id"] = request.state.trace_id
        return response

    @app.exception_handler(PipelineError)
    async def handle_pipeline_error(request: Request, exc: PipelineError):
        return _error_response(
            request,
            code=exc.code,
            message=exc.message,
            error_class=exc.error_class,
            retryable=exc.retryable,
            status_code=exc.http_status,
        )

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError):
        return _error_response(
            request,
            code="REQ_VALIDATION_FAILED",
            message="invalid payload",
            error_class="validation",
            retryable=False,
            status_code=400,
        )

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_error(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404:
            return _error_response(
                request,
                code="REQ_NOT_FOUND",
                message="resource not found",
                error_class="validation",
                retryable=False,
                status_code=404,
            )
        return _error_response(
            request,
            code="REQ_HTTP_ERROR",
            message=str(exc.detail),
            error_class="validation",
            retryable=False,
            status_code=exc.status_code,
        )

    @app.get("/healthz")
    def healthz(request: Request) -> dict[str, object]:
        return success_envelope({"status": "ok", "llm": get_provider_info()}, _trace_id_from_request(request))

    @app.post("/api/v1/sessions/{session_id}/records")
    async def submit_records(session_id: str, payload: SubmitRecordsRequest, request: Request):
        state = await pipeline.submit(
            session_id,
            [record.model_dump() for record in payload.records],
            payload.intent,
            enrich=payload.enrich,
        )
        return success_envelope(
            session_summary(state, tracker=pipeline.tracker),
            _trace_id_from_request(request),
            message="awaiting_decision" if state.awaiting_decision else "ok",
        )

    @app.post("/api/v1/sessions/{session_id}/decisions")
    async def submit_decision(session_id: str, payload: DecisionRequest, request: Request):
        decision = HITLDecision(
            item_id=payload.item_id,
            action=payload.action,
            selected_code=payload.selected_code,
            selected_title=payload.selected_title,
            notes=payload.notes,
            decided_by=payload.decided_by,
        )
        state = await pipeline.resume(session_id, decision)
        return success_envelope(
            session_summary(state),
            _trace_id_from_request(request),
            message="awaiting_decision" if state.awaiting_decision else "ok",
        )

    @app.get("/api/v1/sessions/{session_id}")
    async def get_session(session_id: str, request: Request):
        state = await pipeline.get_state(session_id)
        return success_envelope(session_summary(state), _trace_id_from_request(request))

    @app.get("/api/v1/sessions/{session_id}/hitl")
    async def get_hitl_queue(session_id: str, request: Request):
        queue = await pipeline.hitl_queue(session_id)
        return success_envelope(queue, _trace_id_from_request(request))

    return app


app = create_app()
