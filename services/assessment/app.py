# services/assessment/app.py
"""FastAPI app for the Assessment Service.

Endpoints:
- POST /assessments/{assessment_id}/attempts: start an attempt
- GET  /assessments/{assessment_id}/attempts/active: resume the live attempt
- GET  /assessments/{assessment_id}/attempts: a user's attempts, newest first
- GET  /assessments/{assessment_id}/statistics: attempt statistics
- PUT  /attempts/{attempt_id}/progress: autosave answers
- POST /attempts/{attempt_id}/submit: submit and grade
- POST /attempts/{attempt_id}/violations: record a proctoring violation
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request, Response, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from packages.common.config import get_settings
from packages.common.docstore import open_document_store
from packages.common.events import EventBus
from packages.common.logging import configure_logging
from packages.common.tracing import trace_middleware
from packages.schemas.assessment import (
    Answer,
    AssessmentAttempt,
    AttemptStatistics,
    StartAttemptResult,
    SubmitAttemptResult,
    Violation,
)
from .container import AssessmentServices, build_services
from .errors import AssessmentError

app = FastAPI(title="Assessment Service", version="1.0.0")
app.middleware("http")(trace_middleware)


class StartAttemptRequest(BaseModel):
    user_id: str
    metadata: Dict[str, Any] = {}


class AutoSaveRequest(BaseModel):
    answers: List[Answer]
    current_time: Optional[datetime] = None


class SubmitAttemptRequest(BaseModel):
    answers: List[Answer]
    metadata: Dict[str, Any] = {}


class ViolationResponse(BaseModel):
    attempt_id: str
    flagged: bool
    violations: int


@app.on_event("startup")
async def _init() -> None:
    """Open the document store and wire the services unless already provided."""
    if getattr(app.state, "services", None) is not None:
        return
    s = get_settings()
    configure_logging(s.LOG_LEVEL, service=s.SERVICE_NAME)
    store = open_document_store(s.DOCUMENT_STORE_DSN)
    await store.init()
    app.state.services = build_services(store, s, events=EventBus(s.KAFKA_BOOTSTRAP))


@app.on_event("shutdown")
async def _close() -> None:
    services: Optional[AssessmentServices] = getattr(app.state, "services", None)
    if services is not None:
        await services.store.close()


def services_of(request: Request) -> AssessmentServices:
    return request.app.state.services


@app.exception_handler(AssessmentError)
async def assessment_error_handler(request: Request, exc: AssessmentError) -> JSONResponse:
    """Render taxonomy errors as `{"error", "detail", "guidance"}`."""
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.get("/health", tags=["system"])
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.post("/assessments/{assessment_id}/attempts", response_model=StartAttemptResult, status_code=status.HTTP_201_CREATED)
async def start_attempt(assessment_id: str, body: StartAttemptRequest, request: Request) -> StartAttemptResult:
    """Start a new attempt; the returned assessment has no answer keys."""
    return await services_of(request).lifecycle.start_attempt(assessment_id, body.user_id, body.metadata)


@app.get("/assessments/{assessment_id}/attempts/active", response_model=Optional[AssessmentAttempt])
async def resume_attempt(assessment_id: str, user_id: str, request: Request) -> Optional[AssessmentAttempt]:
    """Return the user's live attempt, or null when none (or it timed out)."""
    return await services_of(request).lifecycle.resume_attempt(user_id, assessment_id)


@app.get("/assessments/{assessment_id}/attempts", response_model=List[AssessmentAttempt])
async def list_attempts(assessment_id: str, user_id: str, request: Request) -> List[AssessmentAttempt]:
    return await services_of(request).lifecycle.get_user_attempts(user_id, assessment_id)


@app.get("/assessments/{assessment_id}/statistics", response_model=AttemptStatistics)
async def statistics(assessment_id: str, request: Request) -> AttemptStatistics:
    return await services_of(request).analytics.get_attempt_statistics(assessment_id)


@app.put("/attempts/{attempt_id}/progress", status_code=status.HTTP_204_NO_CONTENT)
async def auto_save(attempt_id: str, body: AutoSaveRequest, request: Request) -> Response:
    await services_of(request).lifecycle.auto_save_progress(attempt_id, body.answers, body.current_time)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@app.post("/attempts/{attempt_id}/submit", response_model=SubmitAttemptResult)
async def submit_attempt(attempt_id: str, body: SubmitAttemptRequest, request: Request) -> SubmitAttemptResult:
    """Submit answers; the attempt is graded synchronously."""
    return await services_of(request).lifecycle.submit_attempt(attempt_id, body.answers, body.metadata)


@app.post("/attempts/{attempt_id}/violations", response_model=ViolationResponse)
async def record_violation(attempt_id: str, violation: Violation, request: Request) -> ViolationResponse:
    attempt = await services_of(request).proctoring.record_violation(attempt_id, violation)
    return ViolationResponse(
        attempt_id=attempt.id,
        flagged=attempt.proctoring.flagged,
        violations=len(attempt.proctoring.violations),
    )
