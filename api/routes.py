"""
api/routes.py: FastAPI 엔드포인트
"""

import logging
from contextlib import contextmanager
from typing import List

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, Field, ValidationError

from api.session import DeviceRuntime
from cdl_practice.models.profile_model import DriverProfile
from cdl_practice.models.question_model import Endorsement, LicenseClass
from cdl_practice.models.session_state import ExamStage
from cdl_practice.services.access import AccessLevel, StoreAccessChecker, save_access_level
from cdl_practice.services.diagnostic_engine import DiagnosticEngine
from cdl_practice.services.drill_engine import DrillMode, DrillSessionEngine
from cdl_practice.services.errors import (
    AccessDeniedError,
    ExamStateError,
    InvalidOptionError,
    InvalidPositionError,
)
from cdl_practice.services.exam_engine import ExamSessionEngine
from cdl_practice.services.profile_service import load_profile, save_profile
from cdl_practice.services.progress import (
    category_mastery,
    load_exam_history,
    load_mastered_ids,
    mastery_weakest_domain,
    profile_stats,
    sync_weakest_domain,
)

logger = logging.getLogger(__name__)

router = APIRouter()

# ── Pydantic request bodies ──────────────────────────────────────────────────

class ProfileBody(BaseModel):
    license: LicenseClass = LicenseClass.A
    endorsements: List[Endorsement] = []
    jurisdiction: str = "TX"

class SelectBody(BaseModel):
    position: int
    option_index: int

class PositionBody(BaseModel):
    position: int = 0

class DrillOpenBody(BaseModel):
    category: str = Field(..., min_length=1)
    mode: DrillMode = DrillMode.DRILL

class OptionBody(BaseModel):
    option_index: int

class AccessBody(BaseModel):
    access: AccessLevel


# ── 헬퍼 ─────────────────────────────────────────────────────────────────────

def _runtime(request: Request) -> DeviceRuntime:
    return request.app.state.registry.get(request.state.device_id)


@contextmanager
def _domain_errors():
    """엔진 예외를 HTTP 상태 코드와 사용자용 영문 메시지로 변환 (원문은 로그로)."""
    try:
        yield
    except InvalidPositionError as e:
        logger.info(f"잘못된 문항 위치: {e}")
        raise HTTPException(status_code=400, detail="Question position is out of range.")
    except InvalidOptionError as e:
        logger.info(f"잘못된 보기 인덱스: {e}")
        raise HTTPException(status_code=400, detail="Answer option is out of range.")
    except AccessDeniedError as e:
        logger.info(f"이용 권한 없음: {e}")
        raise HTTPException(
            status_code=402,
            detail="The full exam requires an active subscription or lifetime pass.",
        )
    except ExamStateError as e:
        raise HTTPException(
            status_code=409,
            detail=f"'{e.operation}' is not allowed during the '{e.stage}' stage.",
        )


def _exam(runtime: DeviceRuntime) -> ExamSessionEngine:
    if runtime.exam is None:
        raise HTTPException(status_code=404, detail="No exam session.")
    return runtime.exam


def _drill(runtime: DeviceRuntime) -> DrillSessionEngine:
    if runtime.drill is None:
        raise HTTPException(status_code=404, detail="No drill session.")
    return runtime.drill


def _diagnostic(runtime: DeviceRuntime) -> DiagnosticEngine:
    if runtime.diagnostic is None:
        raise HTTPException(status_code=404, detail="No diagnostic session.")
    return runtime.diagnostic


# ── 프로필 / 권한 ────────────────────────────────────────────────────────────

@router.get("/api/profile")
async def get_profile(request: Request):
    runtime = _runtime(request)
    return load_profile(runtime.store).model_dump(mode="json")


@router.put("/api/profile")
async def put_profile(body: ProfileBody, request: Request):
    runtime = _runtime(request)
    try:
        profile = DriverProfile(
            license=body.license,
            endorsements=body.endorsements,
            jurisdiction=body.jurisdiction,
        )
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=e.errors()[0]["msg"])
    save_profile(runtime.store, profile)
    return profile.model_dump(mode="json")


@router.get("/api/access")
async def get_access(request: Request):
    runtime = _runtime(request)
    profile = load_profile(runtime.store)
    level = StoreAccessChecker(runtime.store).access_level(profile)
    return {"access": level.value, "entitled": level.entitled}


@router.put("/api/access")
async def put_access(body: AccessBody, request: Request):
    """결제 확인(checkout/login) 후 돌려받은 이용 권한을 디바이스에 기록."""
    runtime = _runtime(request)
    save_access_level(runtime.store, body.access)
    logger.info(f"이용 권한 기록: {runtime.device_id} → {body.access.value}")
    return {"access": body.access.value, "entitled": body.access.entitled}


# ── 실전 모의고사 ────────────────────────────────────────────────────────────

@router.post("/api/exam/boot")
async def exam_boot(request: Request):
    """새 엔진으로 부팅. 저장된 세션이 유효하면 이어하기로 부팅된다."""
    runtime = _runtime(request)
    if runtime.exam is not None and runtime.exam.stage in (ExamStage.ACTIVE, ExamStage.SUBMITTING):
        return runtime.exam.state()

    state = request.app.state
    engine = ExamSessionEngine(
        state.bank,
        runtime.store,
        state.scheduler,
        clock=state.clock,
        rng=state.rng,
        access_checker=StoreAccessChecker(runtime.store),
    )
    with _domain_errors():
        engine.boot()
    runtime.replace_exam(engine)
    return engine.state()


@router.post("/api/exam/start")
async def exam_start(request: Request):
    engine = _exam(_runtime(request))
    with _domain_errors():
        engine.start()
    return engine.state()


@router.get("/api/exam/state")
async def exam_state(request: Request):
    return _exam(_runtime(request)).state()


@router.get("/api/exam/question/{position}")
async def exam_question(position: int, request: Request):
    engine = _exam(_runtime(request))
    if engine.stage == ExamStage.BOOT:
        raise HTTPException(status_code=409, detail="Exam is still booting.")
    with _domain_errors():
        return engine.question_view(position)


@router.post("/api/exam/select")
async def exam_select(body: SelectBody, request: Request):
    engine = _exam(_runtime(request))
    with _domain_errors():
        engine.select(body.position, body.option_index)
    return {"ok": True, "answered_count": len(engine.answers)}


@router.post("/api/exam/flag")
async def exam_flag(body: PositionBody, request: Request):
    engine = _exam(_runtime(request))
    with _domain_errors():
        flagged = engine.toggle_flag(body.position)
    return {"ok": True, "flagged": flagged}


@router.post("/api/exam/navigate")
async def exam_navigate(body: PositionBody, request: Request):
    engine = _exam(_runtime(request))
    with _domain_errors():
        position = engine.go_to(body.position)
    return {"ok": True, "position": position}


@router.post("/api/exam/submit")
async def exam_submit(request: Request):
    engine = _exam(_runtime(request))
    with _domain_errors():
        submitted = engine.submit()
    return {"ok": True, "submitted": submitted, "stage": engine.stage.value}


@router.get("/api/exam/results")
async def exam_results(request: Request):
    engine = _exam(_runtime(request))
    if engine.report is None:
        raise HTTPException(status_code=400, detail="Exam has not been submitted yet.")

    review = []
    for pos, q in enumerate(engine.questions):
        selected = engine.answers.get(pos)
        if q.is_correct(selected):
            continue
        review.append({
            "position": pos,
            "id": q.id,
            "category": q.category,
            "text": q.text,
            "options": list(q.options),
            "selected_index": selected,
            "correct_index": q.correct_index,
            "explanation": q.explanation,
        })

    return {
        "stage": engine.stage.value,
        "report": engine.report.model_dump(mode="json", by_alias=True),
        "incorrect": review,
    }


# ── 주제별 드릴 ──────────────────────────────────────────────────────────────

@router.get("/api/categories")
async def list_categories(request: Request):
    runtime = _runtime(request)
    profile = load_profile(runtime.store)
    return {"categories": request.app.state.bank.categories(profile)}


@router.post("/api/drill/open")
async def drill_open(body: DrillOpenBody, request: Request):
    runtime = _runtime(request)
    state = request.app.state
    engine = DrillSessionEngine(
        state.bank,
        runtime.store,
        state.scheduler,
        body.category,
        body.mode,
        clock=state.clock,
    )
    engine.open()
    runtime.replace_drill(engine)
    return engine.state()


@router.get("/api/drill/state")
async def drill_state(request: Request):
    return _drill(_runtime(request)).state()


@router.post("/api/drill/select")
async def drill_select(body: OptionBody, request: Request):
    engine = _drill(_runtime(request))
    with _domain_errors():
        reveal = engine.select(body.option_index)
    return {"accepted": reveal is not None, "reveal": reveal, "state": engine.state()}


@router.post("/api/drill/next")
async def drill_next(request: Request):
    engine = _drill(_runtime(request))
    with _domain_errors():
        engine.next()
    return engine.state()


@router.post("/api/drill/navigate")
async def drill_navigate(body: PositionBody, request: Request):
    engine = _drill(_runtime(request))
    with _domain_errors():
        engine.go_to(body.position)
    return engine.state()


@router.delete("/api/drill")
async def drill_close(request: Request):
    _runtime(request).replace_drill(None)
    return {"ok": True}


# ── 진단 퀵체크 ──────────────────────────────────────────────────────────────

@router.post("/api/diagnostic/start")
async def diagnostic_start(request: Request):
    runtime = _runtime(request)
    state = request.app.state
    engine = DiagnosticEngine(
        state.bank,
        runtime.store,
        state.scheduler,
        clock=state.clock,
        rng=state.rng,
    )
    gate = engine.begin()
    if gate is not None:
        return {"redirect": gate.value}
    runtime.replace_diagnostic(engine)
    return engine.state()


@router.post("/api/diagnostic/answer")
async def diagnostic_answer(body: OptionBody, request: Request):
    engine = _diagnostic(_runtime(request))
    with _domain_errors():
        engine.answer(body.option_index)
    return engine.state()


@router.get("/api/diagnostic/state")
async def diagnostic_state(request: Request):
    return _diagnostic(_runtime(request)).state()


# ── 진도 ─────────────────────────────────────────────────────────────────────

@router.get("/api/progress")
async def progress_summary(request: Request):
    runtime = _runtime(request)
    bank = request.app.state.bank
    profile = load_profile(runtime.store)
    history = load_exam_history(runtime.store)
    return {
        "stats": profile_stats(history),
        "history": [h.model_dump(by_alias=True) for h in history],
        "mastery": category_mastery(bank, profile, load_mastered_ids(runtime.store)),
        "weakest": mastery_weakest_domain(bank, profile, load_mastered_ids(runtime.store)),
    }


@router.post("/api/progress/weakest")
async def progress_sync_weakest(request: Request):
    """학습 화면 진입 시 숙달 기준 취약 영역을 대시보드용 키에 기록."""
    runtime = _runtime(request)
    profile = load_profile(runtime.store)
    return sync_weakest_domain(runtime.store, request.app.state.bank, profile)


@router.post("/api/reset")
async def reset_runtime(request: Request):
    request.app.state.registry.reset(request.state.device_id)
    return {"ok": True}
