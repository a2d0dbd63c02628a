"""
services/exam_engine.py

실전 모의고사 (70문항, 2시간) 세션 상태 머신.

단계:  boot → manifest → active → submitting → results

  - boot:        초기화(프로필 읽기, 시험 id, 이어하기 시도 또는 신규 출제) 후
                 고정 지연 뒤 manifest로 이동.
  - manifest:    시작 전 확인 화면. 신규/이어하기 여부를 보여준다.
  - active:      1초 간격 카운트다운. 답 선택/플래그/이동마다 스냅샷 저장.
  - submitting:  채점 완료. 고정 지연 뒤 저장된 세션과 시험 id를 지우고 results로.
  - results:     종료 상태. 새 시험은 새 엔진으로 시작한다.

남은 시간은 항상 end_at − 현재 시각으로 다시 계산한다 (감산 누적 금지).
엔진은 단 하나의 기록자이므로 잠금은 타이머 스레드와의 직렬화 용도로만 쓴다.
"""

import logging
import random
import re
import threading
import time
from typing import Callable, Dict, List, Optional, Set

from config import (
    BOOT_DELAY_MS,
    EXAM_DURATION_SEC,
    EXAM_LENGTH,
    PASS_THRESHOLD,
    RESUME_BOOT_DELAY_MS,
    SUBMIT_DELAY_MS,
    TICK_INTERVAL_MS,
)
from cdl_practice.models.profile_model import DriverProfile
from cdl_practice.models.question_model import Question
from cdl_practice.models.score_report import ScoreReport
from cdl_practice.models.session_state import EXAM_ID_PATTERN, ExamSession, ExamStage
from cdl_practice.services.access import AccessChecker
from cdl_practice.services.errors import (
    AccessDeniedError,
    ExamStateError,
    InvalidOptionError,
    InvalidPositionError,
)
from cdl_practice.services.exam_service import build_score_report, elapsed_minutes
from cdl_practice.services.profile_service import load_profile
from cdl_practice.services.progress import append_exam_history
from cdl_practice.services.question_bank import QuestionBank
from cdl_practice.services.scheduler import CancelHandle, Scheduler
from cdl_practice.services.store import KeyValueStore, StorageKeys

logger = logging.getLogger(__name__)

EXAM_ID_RE = re.compile(EXAM_ID_PATTERN)


def make_exam_id(rng: random.Random) -> str:
    return f"DMV-{rng.randint(0, 999):03d}-{rng.randint(0, 9999):04d}-{rng.randint(0, 99):02d}"


class ExamSessionEngine:
    def __init__(
        self,
        bank: QuestionBank,
        store: KeyValueStore,
        scheduler: Scheduler,
        *,
        clock: Callable[[], float] = time.time,
        rng: Optional[random.Random] = None,
        access_checker: Optional[AccessChecker] = None,
        exam_length: int = EXAM_LENGTH,
        duration_sec: int = EXAM_DURATION_SEC,
        pass_threshold: int = PASS_THRESHOLD,
        boot_delay_ms: int = BOOT_DELAY_MS,
        resume_boot_delay_ms: int = RESUME_BOOT_DELAY_MS,
        submit_delay_ms: int = SUBMIT_DELAY_MS,
        tick_interval_ms: int = TICK_INTERVAL_MS,
    ):
        self.bank = bank
        self.store = store
        self.scheduler = scheduler
        self.clock = clock
        self.rng = rng or random.Random()
        self.access_checker = access_checker
        self.exam_length = exam_length
        self.duration_sec = duration_sec
        self.pass_threshold = pass_threshold
        self.boot_delay_ms = boot_delay_ms
        self.resume_boot_delay_ms = resume_boot_delay_ms
        self.submit_delay_ms = submit_delay_ms
        self.tick_interval_ms = tick_interval_ms

        self._lock = threading.RLock()
        self.stage = ExamStage.BOOT
        self.profile: Optional[DriverProfile] = None
        self.exam_id: Optional[str] = None
        self.questions: List[Question] = []
        self.answers: Dict[int, int] = {}
        self.flags: Set[int] = set()
        self.current_position = 0
        self.end_at: Optional[int] = None
        self.resumed = False
        self.report: Optional[ScoreReport] = None

        self._booted = False
        self._closed = False
        self._ticker: Optional[CancelHandle] = None
        self._pending: Optional[CancelHandle] = None

    # ── 시각 ────────────────────────────────────────────────────────────────

    def _now_ms(self) -> int:
        return int(self.clock() * 1000)

    @property
    def total(self) -> int:
        return len(self.questions)

    @property
    def started_at(self) -> Optional[int]:
        if self.end_at is None:
            return None
        return self.end_at - self.duration_sec * 1000

    def remaining_seconds(self) -> int:
        """남은 시간(초). 마감 전에는 전체 시간, 음수는 0으로 고정."""
        if self.end_at is None:
            return self.duration_sec
        return max(0, (self.end_at - self._now_ms()) // 1000)

    @property
    def is_resuming(self) -> bool:
        return self.resumed and self.end_at is not None and self.end_at > self._now_ms()

    # ── boot ────────────────────────────────────────────────────────────────

    def boot(self) -> None:
        """
        세션 초기화 후 manifest 전환을 예약한다.

        1. 프로필 읽기 (없거나 잘못되면 기본값)
        2. 시험 id 읽기/발급 (발급 즉시 저장, 세션이 완료될 때까지 재사용)
        3. 저장된 세션 조용히 이어하기 시도
        4. 이어하기가 아니면 신규 출제
        """
        with self._lock:
            if self._booted or self._closed:
                raise ExamStateError("boot", self.stage.value)
            self._booted = True

            self.profile = load_profile(self.store)
            if self.access_checker is not None:
                level = self.access_checker.access_level(self.profile)
                if not level.entitled:
                    raise AccessDeniedError("실전 모의고사 이용 권한이 없습니다.")

            self.exam_id = self._read_or_mint_exam_id()

            if self._try_resume():
                delay = self.resume_boot_delay_ms
            else:
                self._assemble_pool()
                delay = self.boot_delay_ms

            self._pending = self.scheduler.schedule_once(delay, self._enter_manifest)

    def _read_or_mint_exam_id(self) -> str:
        existing = self.store.get(StorageKeys.EXAM_ID)
        if existing and EXAM_ID_RE.match(existing):
            return existing
        exam_id = make_exam_id(self.rng)
        self.store.set(StorageKeys.EXAM_ID, exam_id)
        logger.info(f"시험 id 발급: {exam_id}")
        return exam_id

    def _try_resume(self) -> bool:
        raw = self.store.get(StorageKeys.ACTIVE_SESSION)
        if not raw:
            return False

        snapshot = ExamSession.decode(raw)
        questions = self._validate_snapshot(snapshot)
        if snapshot is None or questions is None:
            logger.info("저장된 세션이 유효하지 않아 폐기합니다.")
            self.store.remove(StorageKeys.ACTIVE_SESSION)
            return False

        self.profile = snapshot.profile
        self.questions = questions
        self.answers = dict(snapshot.answers)
        self.flags = set(snapshot.flags)
        self.current_position = snapshot.current_position
        self.end_at = snapshot.end_at
        self.exam_id = snapshot.exam_id
        self.resumed = True
        if self.store.get(StorageKeys.EXAM_ID) != snapshot.exam_id:
            self.store.set(StorageKeys.EXAM_ID, snapshot.exam_id)

        logger.info(
            f"세션 이어하기: {self.exam_id} "
            f"(응답 {len(self.answers)}/{self.total}, 남은 {self.remaining_seconds()}초)"
        )
        return True

    def _validate_snapshot(self, snapshot: Optional[ExamSession]) -> Optional[List[Question]]:
        if snapshot is None:
            return None
        if snapshot.end_at <= self._now_ms():
            return None
        questions = self.bank.resolve(snapshot.question_ids)
        if questions is None:
            return None
        for pos, opt in snapshot.answers.items():
            if opt >= questions[pos].option_count():
                return None
        return questions

    def _assemble_pool(self) -> None:
        if not len(self.bank):
            raise RuntimeError("문제은행이 비어 있어 시험을 구성할 수 없습니다.")
        self.questions = self.bank.sample(self.profile, self.exam_length, self.rng)
        self.answers = {}
        self.flags = set()
        self.current_position = 0
        self.end_at = None
        self.resumed = False
        logger.info(
            f"신규 출제: {self.total}문항 (면허 {self.profile.license.value}, 관할 {self.profile.jurisdiction})"
        )

    def _enter_manifest(self) -> None:
        with self._lock:
            self._pending = None
            if self._closed or self.stage != ExamStage.BOOT:
                return
            self.stage = ExamStage.MANIFEST

    # ── manifest → active ───────────────────────────────────────────────────

    def start(self) -> None:
        """시작/이어하기. 이어하기면 저장된 end_at을 그대로 쓴다."""
        with self._lock:
            if self.stage != ExamStage.MANIFEST:
                raise ExamStateError("start", self.stage.value)

            if self.resumed and not self.is_resuming:
                # manifest에서 기다리는 동안 마감된 세션은 새로 시작
                logger.info("이어하기 대기 중 마감됨 → 신규 출제")
                self.store.remove(StorageKeys.ACTIVE_SESSION)
                self._assemble_pool()

            if self.end_at is None:
                self.end_at = self._now_ms() + self.duration_sec * 1000

            self.stage = ExamStage.ACTIVE
            self._persist()
            self._ticker = self.scheduler.schedule_repeating(self.tick_interval_ms, self.tick)
            logger.info(f"시험 시작: {self.exam_id} (이어하기={self.resumed})")

    # ── active ──────────────────────────────────────────────────────────────

    def _require_active(self, operation: str) -> None:
        # 틱보다 먼저 마감을 넘긴 조작은 받지 않는다
        if self.stage == ExamStage.ACTIVE and self.remaining_seconds() <= 0:
            self._submit(forced=True)
        if self.stage != ExamStage.ACTIVE:
            raise ExamStateError(operation, self.stage.value)

    def _check_position(self, position: int) -> None:
        if not (0 <= position < self.total):
            raise InvalidPositionError(f"문항 위치 {position}가 범위(0~{self.total - 1})를 벗어났습니다.")

    def select(self, position: int, option_index: int) -> None:
        """답 선택. 제출 전까지는 언제든 바꿀 수 있고 정답 여부는 알려주지 않는다."""
        with self._lock:
            self._require_active("select")
            self._check_position(position)
            count = self.questions[position].option_count()
            if not (0 <= option_index < count):
                raise InvalidOptionError(f"보기 인덱스 {option_index}가 범위(0~{count - 1})를 벗어났습니다.")
            self.answers[position] = option_index
            self._persist()

    def toggle_flag(self, position: int) -> bool:
        """검토 표시 토글. 토글 후 표시 여부를 반환한다."""
        with self._lock:
            self._require_active("toggle_flag")
            self._check_position(position)
            if position in self.flags:
                self.flags.discard(position)
            else:
                self.flags.add(position)
            self._persist()
            return position in self.flags

    def go_to(self, position: int) -> int:
        with self._lock:
            self._require_active("go_to")
            self.current_position = max(0, min(position, self.total - 1))
            self._persist()
            return self.current_position

    def tick(self) -> None:
        """카운트다운 콜백. 마감이면 강제 제출 (단계 검사로 중복 방지)."""
        with self._lock:
            if self._closed or self.stage != ExamStage.ACTIVE:
                return
            if self.remaining_seconds() <= 0:
                logger.info(f"시간 종료 → 자동 제출: {self.exam_id}")
                self._submit(forced=True)

    def snapshot(self) -> ExamSession:
        return ExamSession(
            license=self.profile.license,
            endorsements=self.profile.endorsements,
            jurisdiction=self.profile.jurisdiction,
            question_ids=[q.id for q in self.questions],
            answers=dict(self.answers),
            flags=sorted(self.flags),
            current_position=self.current_position,
            end_at=self.end_at,
            started_at=self.started_at,
            exam_id=self.exam_id,
        )

    def _persist(self) -> None:
        self.store.set(StorageKeys.ACTIVE_SESSION, self.snapshot().to_json())

    # ── 제출 ────────────────────────────────────────────────────────────────

    def submit(self) -> bool:
        """
        수동 제출. 이미 제출 중이거나 결과 단계면 아무것도 하지 않고 False.
        """
        with self._lock:
            if self.stage in (ExamStage.SUBMITTING, ExamStage.RESULTS):
                return False
            if self.stage != ExamStage.ACTIVE:
                raise ExamStateError("submit", self.stage.value)
            self._submit(forced=self.remaining_seconds() <= 0)
            return True

    def _submit(self, forced: bool) -> None:
        self.stage = ExamStage.SUBMITTING
        self._cancel_ticker()

        remaining = self.remaining_seconds()
        self.report = build_score_report(
            self.questions,
            self.answers,
            elapsed_minutes(self.duration_sec, remaining),
            exam_id=self.exam_id,
            pass_score=self.pass_threshold,
        )
        logger.info(
            f"채점 완료: {self.exam_id} {self.report.score}점 "
            f"({'합격' if self.report.passed else '불합격'}, 자동제출={forced})"
        )
        self._pending = self.scheduler.schedule_once(self.submit_delay_ms, self._finish)

    def _finish(self) -> None:
        with self._lock:
            self._pending = None
            if self.stage != ExamStage.SUBMITTING:
                return
            self.store.remove(StorageKeys.ACTIVE_SESSION)
            self.store.remove(StorageKeys.EXAM_ID)
            self.store.set(StorageKeys.LAST_EXAM_REPORT, self.report.model_dump_json(by_alias=True))
            append_exam_history(self.store, self.report, self._now_ms())
            self.stage = ExamStage.RESULTS

    # ── 정리 ────────────────────────────────────────────────────────────────

    def _cancel_ticker(self) -> None:
        if self._ticker is not None:
            self._ticker.cancel()
            self._ticker = None

    def close(self) -> None:
        """
        화면 이탈/런타임 정리. 타이머를 모두 취소한다.
        진행 중 세션의 스냅샷은 지우지 않는다 (다음에 이어하기).
        제출 처리 중이면 결과 기록을 즉시 마친다.
        """
        with self._lock:
            if self._closed:
                return
            if self.stage == ExamStage.SUBMITTING:
                self._finish()
            self._closed = True
            self._cancel_ticker()
            if self._pending is not None:
                self._pending.cancel()
                self._pending = None

    # ── 조회 ────────────────────────────────────────────────────────────────

    def state(self) -> Dict[str, object]:
        with self._lock:
            return {
                "stage": self.stage.value,
                "exam_id": self.exam_id,
                "resuming": self.is_resuming,
                "total": self.total,
                "answered_count": len(self.answers),
                "answers": {str(k): v for k, v in sorted(self.answers.items())},
                "flags": sorted(self.flags),
                "current_position": self.current_position,
                "remaining_seconds": self.remaining_seconds(),
                "end_at": self.end_at,
                "profile": self.profile.model_dump(mode="json") if self.profile else None,
            }

    def question_view(self, position: int) -> Dict[str, object]:
        """시험 중 문항 표시용. 정답과 해설은 포함하지 않는다."""
        with self._lock:
            self._check_position(position)
            q = self.questions[position]
            return {
                "position": position,
                "total": self.total,
                "id": q.id,
                "category": q.category,
                "endorsements": [e.value for e in q.endorsements or []],
                "text": q.text,
                "options": list(q.options),
                "selected_index": self.answers.get(position),
                "flagged": position in self.flags,
            }
