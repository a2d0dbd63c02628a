"""
services/diagnostic_engine.py

무료 진단 퀵체크 (5문항, 5분).

결제 사용자는 대시보드로, 이미 진단을 본 사용자는 결제 화면으로 보낸다.
그 외에는 분류가 겹치지 않게 문항을 골라 순서대로 답하게 하고,
마지막 답 또는 시간 초과 시 한 번만 결과를 기록한 뒤 analyzing → done.

기록하는 키 (대시보드가 읽음):
  diagnosticScore, weakestDomain, haul_diagnostic_answers,
  haul_diagnostic_breakdown, haul_diagnostic_meta
"""

import logging
import random
import threading
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, List, Optional

from config import (
    DIAGNOSTIC_ANALYZE_DELAY_MS,
    DIAGNOSTIC_LENGTH,
    DIAGNOSTIC_TIME_LIMIT_SEC,
    PASS_THRESHOLD,
    TICK_INTERVAL_MS,
)
from cdl_practice.models.profile_model import DriverProfile
from cdl_practice.models.question_model import Question
from cdl_practice.models.score_report import AnswerRecord
from cdl_practice.services.access import AccessChecker, StoreAccessChecker
from cdl_practice.services.errors import ExamStateError, InvalidOptionError
from cdl_practice.services.profile_service import load_profile
from cdl_practice.services.question_bank import QuestionBank
from cdl_practice.services.scheduler import CancelHandle, Scheduler
from cdl_practice.services.store import KeyValueStore, StorageKeys, save_json

logger = logging.getLogger(__name__)

DEFAULT_WEAKEST_DOMAIN = "General Knowledge"
DISTINCT_CATEGORY_PICKS = 3     # 앞쪽 3문항은 서로 다른 분류에서
MISSED_PREVIEW = 3


class DiagnosticStage(str, Enum):
    QUIZ = "quiz"
    ANALYZING = "analyzing"
    DONE = "done"


class DiagnosticGate(str, Enum):
    DASHBOARD = "dashboard"
    PAYWALL = "paywall"


def _iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def make_session_id(rng: random.Random, now: float) -> str:
    a = f"{rng.getrandbits(32):08x}"
    b = f"{int(now * 1000):x}"[-6:]
    return f"S-{a}-{b}".upper()


def pick_diagnostic_questions(pool: List[Question], n: int, rng: random.Random) -> List[Question]:
    """
    섞은 뒤 앞쪽 DISTINCT_CATEGORY_PICKS 문항은 분류가 겹치지 않게 고르고,
    나머지는 순서대로 채운다.
    """
    shuffled = list(pool)
    rng.shuffle(shuffled)

    picked: List[Question] = []
    seen = set()
    for q in shuffled:
        if len(picked) >= n:
            break
        if q.category not in seen or len(picked) >= DISTINCT_CATEGORY_PICKS:
            picked.append(q)
            seen.add(q.category)

    for q in shuffled:
        if len(picked) >= n:
            break
        if q not in picked:
            picked.append(q)
    return picked


def compute_breakdown(records: List[AnswerRecord]) -> Dict[str, Dict[str, int]]:
    totals: Dict[str, Dict[str, int]] = {}
    for r in records:
        b = totals.setdefault(r.category, {"total": 0, "correct": 0})
        b["total"] += 1
        if r.is_correct:
            b["correct"] += 1
    for b in totals.values():
        b["accuracy"] = round(b["correct"] / b["total"] * 100) if b["total"] else 0
    return totals


def pick_weakest_domain(breakdown: Dict[str, Dict[str, int]]) -> str:
    """정확도가 가장 낮은 분류. 같으면 문항 수가 많은 쪽."""
    if not breakdown:
        return DEFAULT_WEAKEST_DOMAIN
    ranked = sorted(breakdown.items(), key=lambda kv: (kv[1]["accuracy"], -kv[1]["total"]))
    return ranked[0][0] or DEFAULT_WEAKEST_DOMAIN


def status_from_score(score: int) -> Dict[str, str]:
    if score >= PASS_THRESHOLD:
        return {"label": "PASS READY", "risk": "LOW"}
    if score >= 60:
        return {"label": "NOT READY", "risk": "MED"}
    return {"label": "HIGH RISK", "risk": "HIGH"}


class DiagnosticEngine:
    def __init__(
        self,
        bank: QuestionBank,
        store: KeyValueStore,
        scheduler: Scheduler,
        *,
        clock: Callable[[], float] = time.time,
        rng: Optional[random.Random] = None,
        access_checker: Optional[AccessChecker] = None,
        length: int = DIAGNOSTIC_LENGTH,
        time_limit_sec: int = DIAGNOSTIC_TIME_LIMIT_SEC,
        analyze_delay_ms: int = DIAGNOSTIC_ANALYZE_DELAY_MS,
        tick_interval_ms: int = TICK_INTERVAL_MS,
    ):
        self.bank = bank
        self.store = store
        self.scheduler = scheduler
        self.clock = clock
        self.rng = rng or random.Random()
        self.access_checker = access_checker or StoreAccessChecker(store)
        self.length = length
        self.time_limit_sec = time_limit_sec
        self.analyze_delay_ms = analyze_delay_ms
        self.tick_interval_ms = tick_interval_ms

        self._lock = threading.RLock()
        self.stage: Optional[DiagnosticStage] = None
        self.profile: Optional[DriverProfile] = None
        self.questions: List[Question] = []
        self.records: List[AnswerRecord] = []
        self.started_at = 0.0
        self.end_at = 0.0
        self.score: Optional[int] = None
        self.weakest: Optional[str] = None
        self.breakdown: Dict[str, Dict[str, int]] = {}
        self._ticker: Optional[CancelHandle] = None
        self._pending: Optional[CancelHandle] = None
        self._closed = False

    def begin(self) -> Optional[DiagnosticGate]:
        """
        진입 검사 후 퀴즈를 시작한다.
        다른 화면으로 보내야 하면 그 목적지를 반환하고 퀴즈는 시작하지 않는다.
        """
        with self._lock:
            if self.stage is not None:
                raise ExamStateError("begin", self.stage.value)

            self.profile = load_profile(self.store)
            if self.access_checker.access_level(self.profile).entitled:
                return DiagnosticGate.DASHBOARD
            if self.store.get(StorageKeys.DIAGNOSTIC_SCORE):
                return DiagnosticGate.PAYWALL

            now = self.clock()
            if not self.store.get(StorageKeys.SESSION_ID):
                self.store.set(StorageKeys.SESSION_ID, make_session_id(self.rng, now))
            if not self.store.get(StorageKeys.DIAGNOSTIC_STARTED_AT):
                self.store.set(StorageKeys.DIAGNOSTIC_STARTED_AT, _iso(now))

            pool = self.bank.eligible(self.profile) or list(self.bank)
            self.questions = pick_diagnostic_questions(pool, self.length, self.rng)
            self.started_at = now
            self.end_at = now + self.time_limit_sec
            self.stage = DiagnosticStage.QUIZ
            if not self.questions:
                self._stop()
                return None
            self._ticker = self.scheduler.schedule_repeating(self.tick_interval_ms, self.tick)
            logger.info(f"진단 시작: {len(self.questions)}문항 (면허 {self.profile.license.value})")
            return None

    @property
    def current_index(self) -> int:
        return len(self.records)

    def remaining_seconds(self) -> int:
        return max(0, int(self.end_at - self.clock()))

    def answer(self, option_index: int) -> None:
        """현재 문항에 답을 확정하고 다음 문항으로. 마지막이면 결과 기록."""
        with self._lock:
            self.tick()
            if self.stage != DiagnosticStage.QUIZ:
                raise ExamStateError("answer", self.stage.value if self.stage else "none")
            q = self.questions[self.current_index]
            if not (0 <= option_index < q.option_count()):
                raise InvalidOptionError(f"보기 인덱스 {option_index}가 범위를 벗어났습니다.")
            self.records.append(self._record(q, option_index))
            if self.current_index >= len(self.questions):
                self._stop()

    def tick(self) -> None:
        with self._lock:
            if self._closed or self.stage != DiagnosticStage.QUIZ:
                return
            if self.clock() >= self.end_at:
                for q in self.questions[self.current_index:]:
                    self.records.append(self._record(q, -1))
                logger.info("진단 시간 초과 → 남은 문항 미응답 처리")
                self._stop()

    @staticmethod
    def _record(q: Question, selected: int) -> AnswerRecord:
        return AnswerRecord(
            id=q.id,
            category=q.category,
            is_correct=q.is_correct(selected),
            text=q.text,
            options=list(q.options),
            explanation=q.explanation,
            selected_index=selected,
            correct_index=q.correct_index,
        )

    def _stop(self) -> None:
        self.stage = DiagnosticStage.ANALYZING
        if self._ticker is not None:
            self._ticker.cancel()
            self._ticker = None

        total = len(self.questions)
        correct = sum(1 for r in self.records if r.is_correct)
        self.score = round(correct / total * 100) if total else 0
        self.breakdown = compute_breakdown(self.records)
        self.weakest = pick_weakest_domain(self.breakdown)

        now = self.clock()
        self.store.set(StorageKeys.DIAGNOSTIC_SCORE, str(self.score))
        self.store.set(StorageKeys.WEAKEST_DOMAIN, self.weakest)
        save_json(self.store, StorageKeys.DIAGNOSTIC_ANSWERS, [r.model_dump(by_alias=True) for r in self.records])
        save_json(self.store, StorageKeys.DIAGNOSTIC_BREAKDOWN, self.breakdown)
        save_json(self.store, StorageKeys.DIAGNOSTIC_META, {
            "sessionId": self.store.get(StorageKeys.SESSION_ID),
            "startedAt": self.store.get(StorageKeys.DIAGNOSTIC_STARTED_AT) or _iso(self.started_at),
            "completedAt": _iso(now),
            "license": self.profile.license.value,
            "state": self.profile.jurisdiction,
            "endorsements": [e.value for e in self.profile.endorsements],
            "timeLimitSec": self.time_limit_sec,
            "timeUsedSec": max(0, min(self.time_limit_sec, round(now - self.started_at))),
        })
        logger.info(f"진단 완료: {self.score}점, 취약 영역 {self.weakest}")
        self._pending = self.scheduler.schedule_once(self.analyze_delay_ms, self._done)

    def _done(self) -> None:
        with self._lock:
            self._pending = None
            if self.stage == DiagnosticStage.ANALYZING:
                self.stage = DiagnosticStage.DONE

    def missed_preview(self) -> List[AnswerRecord]:
        """틀린 문항 중 취약 영역을 앞에 두고 최대 3개."""
        missed = [r for r in self.records if not r.is_correct]
        missed.sort(key=lambda r: 0 if r.category == self.weakest else 1)
        return missed[:MISSED_PREVIEW]

    def close(self) -> None:
        with self._lock:
            self._closed = True
            for handle in (self._ticker, self._pending):
                if handle is not None:
                    handle.cancel()
            self._ticker = None
            self._pending = None

    def state(self) -> Dict[str, object]:
        with self._lock:
            question = None
            if self.stage == DiagnosticStage.QUIZ and self.current_index < len(self.questions):
                q = self.questions[self.current_index]
                question = {"id": q.id, "category": q.category, "text": q.text, "options": list(q.options)}
            result = None
            if self.score is not None:
                result = {
                    "score": self.score,
                    "weakest_domain": self.weakest,
                    "breakdown": self.breakdown,
                    "status": status_from_score(self.score),
                    "missed": [r.model_dump(by_alias=True) for r in self.missed_preview()],
                }
            return {
                "stage": self.stage.value if self.stage else None,
                "index": self.current_index,
                "total": len(self.questions),
                "question": question,
                "remaining_seconds": self.remaining_seconds() if self.stage == DiagnosticStage.QUIZ else 0,
                "result": result,
            }
