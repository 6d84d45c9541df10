import logging
import os
from contextlib import asynccontextmanager
from logging.handlers import RotatingFileHandler
from typing import Optional

import uvicorn
from fastapi import (
    Cookie,
    Depends,
    FastAPI,
    Header,
    Request,
    Response,
)
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from .clock import AsyncioScheduler
from .config import settings
from .database import init_db
from .engine import ExamEngine
from .errors import ExamPrepError
from .loaders import LoaderFactory
from .log_handler import SQLiteHandler
from .models import ConflictResolution, DurationRule, ExamType, QuizSelection
from .questions import QuestionBank
from .redis_session import redis_client
from .submission import SQLiteAttemptStore

# --- Logging Setup ---
package_logger = logging.getLogger("examprep")
package_logger.setLevel(logging.INFO)

if settings.LOG_TO_DB:
    package_logger.addHandler(SQLiteHandler())
else:
    if not os.path.exists(settings.LOG_DIR):
        os.makedirs(settings.LOG_DIR)
    log_path = os.path.join(settings.LOG_DIR, settings.LOG_FILE)
    file_handler = RotatingFileHandler(log_path, maxBytes=5_000_000, backupCount=3)
    file_handler.setFormatter(
        logging.Formatter("%(asctime)s - %(levelname)s - %(message)s")
    )
    package_logger.addHandler(file_handler)

logger = logging.getLogger(__name__)


# --- Lifecycle ---
@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    question_bank.load_all()
    engine = ExamEngine.create(
        redis_client,
        LoaderFactory.for_bank(question_bank),
        SQLiteAttemptStore(),
        AsyncioScheduler(),
    )
    app.state.engine = engine
    await engine.recorder.flush_pending()
    yield


app = FastAPI(
    title=settings.PROJECT_NAME,
    debug=settings.DEBUG,
    lifespan=lifespan,
)

question_bank = QuestionBank(settings.QUESTIONS_DIR)


@app.exception_handler(ExamPrepError)
async def exam_prep_error_handler(request: Request, exc: ExamPrepError):
    if exc.status_code >= 500:
        logger.error(f"{request.url.path}: {exc.message}")
    return JSONResponse(exc.to_dict(), status_code=exc.status_code)


# --- Request bodies ---
class AnswerRequest(BaseModel):
    question_id: str
    answer: str


# --- Dependencies ---
def get_engine(request: Request) -> ExamEngine:
    return request.app.state.engine


def get_session_id(
    session_id: Optional[str] = Cookie(None, alias=settings.SESSION_COOKIE_NAME),
) -> Optional[str]:
    return session_id


def get_user_id(user_id: str = Header("anonymous", alias="X-User-Id")) -> str:
    return user_id


def get_context_id(context_id: str = Header("default", alias="X-Client-Context")) -> str:
    return context_id


def session_invalid() -> JSONResponse:
    return JSONResponse({"error": "Session invalid", "reason": "no_session"}, status_code=401)


def set_session_cookie(response: Response, session_id: str):
    response.set_cookie(
        key=settings.SESSION_COOKIE_NAME,
        value=session_id,
        httponly=True,
        samesite="Lax",
    )


# --- Routes ---
@app.get("/api/subjects")
async def get_subjects(exam_type: Optional[ExamType] = None):
    return question_bank.get_subjects(exam_type)


@app.post("/api/sessions")
async def start_session(
    selection: QuizSelection,
    response: Response,
    allow_untimed_fallback: bool = False,
    user_id: str = Depends(get_user_id),
    context_id: str = Depends(get_context_id),
    engine: ExamEngine = Depends(get_engine),
):
    handle = await engine.start_session(
        selection, user_id, context_id, allow_untimed_fallback=allow_untimed_fallback
    )
    logger.info(
        f"New session: {handle.session_id} [User: {user_id}, "
        f"Mode: {selection.quiz_mode_identifier}]"
    )
    set_session_cookie(response, handle.session_id)
    return engine.get_state(handle.session_id)


@app.get("/api/session")
async def get_session_state(
    session_id: Optional[str] = Depends(get_session_id),
    engine: ExamEngine = Depends(get_engine),
):
    if not session_id:
        return session_invalid()
    return engine.get_state(session_id)


@app.post("/api/session/answer")
async def record_answer(
    body: AnswerRequest,
    session_id: Optional[str] = Depends(get_session_id),
    engine: ExamEngine = Depends(get_engine),
):
    if not session_id:
        return session_invalid()
    return engine.record_answer(session_id, body.question_id, body.answer)


@app.post("/api/session/advance")
async def advance(
    session_id: Optional[str] = Depends(get_session_id),
    engine: ExamEngine = Depends(get_engine),
):
    if not session_id:
        return session_invalid()
    moved = engine.advance(session_id)
    return {"moved": moved, "current_index": engine.get_state(session_id).current_index}


@app.post("/api/session/previous")
async def previous(
    session_id: Optional[str] = Depends(get_session_id),
    engine: ExamEngine = Depends(get_engine),
):
    if not session_id:
        return session_invalid()
    moved = engine.previous(session_id)
    return {"moved": moved, "current_index": engine.get_state(session_id).current_index}


@app.post("/api/session/goto/{index}")
async def go_to(
    index: int,
    session_id: Optional[str] = Depends(get_session_id),
    engine: ExamEngine = Depends(get_engine),
):
    if not session_id:
        return session_invalid()
    engine.go_to(session_id, index)
    return {"moved": True, "current_index": index}


@app.post("/api/session/submit")
async def submit(
    session_id: Optional[str] = Depends(get_session_id),
    engine: ExamEngine = Depends(get_engine),
):
    if not session_id:
        return session_invalid()
    await engine.submit(session_id)
    return engine.get_state(session_id)


@app.post("/api/session/resume")
async def resume(
    response: Response,
    resolution: Optional[ConflictResolution] = None,
    session_id: Optional[str] = Depends(get_session_id),
    context_id: str = Depends(get_context_id),
    engine: ExamEngine = Depends(get_engine),
):
    if not session_id:
        return session_invalid()
    handle = await engine.resume_session(session_id, context_id, resolution)
    if handle is None:
        response.delete_cookie(settings.SESSION_COOKIE_NAME)
        return {"status": "discarded"}
    return engine.get_state(handle.session_id)


@app.delete("/api/session")
async def abandon(
    response: Response,
    session_id: Optional[str] = Depends(get_session_id),
    engine: ExamEngine = Depends(get_engine),
):
    if session_id:
        engine.abandon(session_id)
    response.delete_cookie(settings.SESSION_COOKIE_NAME)
    return {"status": "success"}


@app.get("/api/attempts")
async def list_attempts(
    user_id: str = Depends(get_user_id),
    engine: ExamEngine = Depends(get_engine),
):
    return await engine.list_attempts(user_id)


@app.get("/api/rules")
async def list_rules(engine: ExamEngine = Depends(get_engine)):
    return engine.list_rules()


@app.put("/api/rules")
async def upsert_rule(rule: DurationRule, engine: ExamEngine = Depends(get_engine)):
    return engine.upsert_rule(rule)


@app.delete("/api/rules")
async def delete_rule(
    exam_type: ExamType,
    subject: Optional[str] = None,
    year: Optional[int] = None,
    engine: ExamEngine = Depends(get_engine),
):
    if not engine.delete_rule(exam_type, subject, year):
        return JSONResponse({"error": "Rule not found", "reason": "rule_not_found"}, status_code=404)
    return {"status": "success"}


@app.get("/api/rules/resolve")
async def resolve_duration(
    exam_type: ExamType,
    subject: Optional[str] = None,
    year: Optional[int] = None,
    engine: ExamEngine = Depends(get_engine),
):
    return {"duration_seconds": engine.resolve_duration(exam_type, subject, year)}


if __name__ == "__main__":
    uvicorn.run("examprep.main:app", host="0.0.0.0", port=8000, reload=settings.DEBUG)
