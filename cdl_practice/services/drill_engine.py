"""
services/drill_engine.py

주제별 연습 스테이션 (단일 분류).

모드:
  - drill: 세션 전체 제한시간(기본 420초). 만료 시 현재 위치와 무관하게 complete.
  - study: 시간 제한 없음. 번호 그리드로 자유 이동.

두 모드 모두 문항당 한 번만 답할 수 있고, 답하면 즉시 정답을 공개한다.
세션은 저장되지 않는다 (화면을 떠나면 버림). 진도 추적용 기록만 남긴다:
  - 분류별 답안 맵
  - 정답을 맞힌 문항의 숙달 목록 추가
"""

import logging
import threading
import time
from enum import Enum
from typing import Callable, Dict, List, Optional

from config import (
    DRILL_DURATION_SEC,
    DRILL_PACE_SEC,
    DRILL_QUALIFY_ACCURACY,
    DRILL_QUALIFY_MIN_ATTEMPTS,
    TICK_INTERVAL_MS,
)
from cdl_practice.models.question_model import Question
from cdl_practice.services.errors import ExamStateError, InvalidOptionError, InvalidPositionError
from cdl_practice.services.progress import add_mastered, record_drill_answer
from cdl_practice.services.question_bank import QuestionBank
from cdl_practice.services.scheduler import CancelHandle, Scheduler
from cdl_practice.services.store import KeyValueStore

logger = logging.getLogger(__name__)


class DrillMode(str, Enum):
    DRILL = "drill"
    STUDY = "study"


class DrillStage(str, Enum):
    ANSWERING = "answering"
    REVEALED = "revealed"
    COMPLETE = "complete"


class DrillSessionEngine:
    def __init__(
        self,
        bank: QuestionBank,
        store: KeyValueStore,
        scheduler: Scheduler,
        category: str,
        mode: DrillMode = DrillMode.DRILL,
        *,
        clock: Callable[[], float] = time.time,
        duration_sec: int = DRILL_DURATION_SEC,
        pace_sec: int = DRILL_PACE_SEC,
        qualify_accuracy: int = DRILL_QUALIFY_ACCURACY,
        qualify_min_attempts: int = DRILL_QUALIFY_MIN_ATTEMPTS,
        tick_interval_ms: int = TICK_INTERVAL_MS,
    ):
        self.bank = bank
        self.store = store
        self.scheduler = scheduler
        self.category = category
        self.mode = DrillMode(mode)
        self.clock = clock
        self.duration_sec = duration_sec
        self.pace_sec = pace_sec
        self.qualify_accuracy = qualify_accuracy
        self.qualify_min_attempts = qualify_min_attempts
        self.tick_interval_ms = tick_interval_ms

        self._lock = threading.RLock()
        self.pool: List[Question] = []
        self.position = 0
        self.stage = DrillStage.ANSWERING
        self.responses: Dict[int, int] = {}   # {위치: 선택한 보기}
        self.correct = 0
        self.attempted = 0
        self.streak = 0
        self.best_streak = 0
        self.end_at: Optional[float] = None
        self._question_started_at = 0.0
        self._ticker: Optional[CancelHandle] = None
        self._opened = False
        self._closed = False

    @property
    def timed(self) -> bool:
        return self.mode == DrillMode.DRILL

    def open(self) -> None:
        """스테이션 진입. 분류 문항으로 풀을 만들고 drill 모드면 시계를 시작한다."""
        with self._lock:
            if self._opened:
                raise ExamStateError("open", self.stage.value)
            self._opened = True
            self.pool = self.bank.by_category(self.category)
            if not self.pool:
                logger.warning(f"분류 '{self.category}'에 문항이 없습니다.")
                self.stage = DrillStage.COMPLETE
                return

            now = self.clock()
            self._question_started_at = now
            if self.timed:
                self.end_at = now + self.duration_sec
                self._ticker = self.scheduler.schedule_repeating(self.tick_interval_ms, self.tick)
            logger.info(f"드릴 시작: {self.category} ({self.mode.value}, {len(self.pool)}문항)")

    # ── 시간 ────────────────────────────────────────────────────────────────

    def remaining_seconds(self) -> Optional[int]:
        if self.end_at is None:
            return None
        return max(0, int(self.end_at - self.clock()))

    def pace_remaining(self) -> int:
        """문항별 페이스 타이머. 표시용이며 답 제출을 막지 않는다."""
        return max(0, self.pace_sec - int(self.clock() - self._question_started_at))

    def tick(self) -> None:
        with self._lock:
            if self._closed or self.stage == DrillStage.COMPLETE:
                return
            if self.end_at is not None and self.clock() >= self.end_at:
                logger.info(f"드릴 시간 종료: {self.category} ({self.correct}/{self.attempted})")
                self._complete()

    # ── 답안 ────────────────────────────────────────────────────────────────

    @property
    def current(self) -> Optional[Question]:
        if not self.pool:
            return None
        return self.pool[self.position]

    def _require_open(self, operation: str) -> None:
        if not self._opened or self._closed:
            raise ExamStateError(operation, self.stage.value)
        self.tick()

    def select(self, option_index: int) -> Optional[Dict[str, object]]:
        """
        보기 선택. 즉시 정답을 공개하고 카운터와 진도 기록을 갱신한다.
        이미 공개된 문항이면 아무것도 하지 않고 None.
        """
        with self._lock:
            self._require_open("select")
            if self.stage == DrillStage.COMPLETE:
                raise ExamStateError("select", self.stage.value)
            if self.stage == DrillStage.REVEALED:
                return None

            q = self.current
            if not (0 <= option_index < q.option_count()):
                raise InvalidOptionError(f"보기 인덱스 {option_index}가 범위를 벗어났습니다.")

            is_correct = q.is_correct(option_index)
            self.responses[self.position] = option_index
            self.attempted += 1
            if is_correct:
                self.correct += 1
                self.streak += 1
                self.best_streak = max(self.best_streak, self.streak)
            else:
                self.streak = 0
            self.stage = DrillStage.REVEALED

            record_drill_answer(self.store, self.category, q.id, option_index)
            if is_correct:
                add_mastered(self.store, q.id)

            return self._reveal(self.position)

    def _reveal(self, position: int) -> Dict[str, object]:
        q = self.pool[position]
        selected = self.responses[position]
        return {
            "position": position,
            "selected_index": selected,
            "correct_index": q.correct_index,
            "is_correct": q.is_correct(selected),
            "explanation": q.explanation,
        }

    # ── 이동 ────────────────────────────────────────────────────────────────

    def _show(self, position: int) -> None:
        self.position = position
        self.stage = DrillStage.REVEALED if position in self.responses else DrillStage.ANSWERING
        self._question_started_at = self.clock()

    def next(self) -> None:
        """공개된 문항에서 다음으로. 마지막 문항이면 complete."""
        with self._lock:
            self._require_open("next")
            if self.stage != DrillStage.REVEALED:
                raise ExamStateError("next", self.stage.value)
            if self.position < len(self.pool) - 1:
                self._show(self.position + 1)
            else:
                self._complete()

    def go_to(self, position: int) -> None:
        """study 모드 번호 그리드 이동. 이미 답한 문항은 공개 상태로 보인다."""
        with self._lock:
            if self.mode != DrillMode.STUDY or self.stage == DrillStage.COMPLETE:
                raise ExamStateError("go_to", self.stage.value)
            if not (0 <= position < len(self.pool)):
                raise InvalidPositionError(f"문항 위치 {position}가 범위를 벗어났습니다.")
            self._show(position)

    def _complete(self) -> None:
        self.stage = DrillStage.COMPLETE
        if self._ticker is not None:
            self._ticker.cancel()
            self._ticker = None

    def close(self) -> None:
        """화면 이탈. 메모리 상태는 버리고 타이머만 정리한다."""
        with self._lock:
            self._closed = True
            if self._ticker is not None:
                self._ticker.cancel()
                self._ticker = None

    # ── 집계 ────────────────────────────────────────────────────────────────

    @property
    def accuracy(self) -> int:
        return round(self.correct / self.attempted * 100) if self.attempted else 0

    @property
    def qualified(self) -> bool:
        """
        정확도 기준과 최소 응답 수를 모두 만족해야 통과.
        쉬운 문항 1~2개만 풀고 높은 정확도를 받는 경우를 막는다.
        """
        min_attempts = min(self.qualify_min_attempts, len(self.pool))
        return self.accuracy >= self.qualify_accuracy and self.attempted >= min_attempts

    def state(self) -> Dict[str, object]:
        with self._lock:
            q = self.current
            question = None
            if q is not None and self.stage != DrillStage.COMPLETE:
                question = {
                    "id": q.id,
                    "text": q.text,
                    "options": list(q.options),
                }
            return {
                "category": self.category,
                "mode": self.mode.value,
                "stage": self.stage.value,
                "position": self.position,
                "total": len(self.pool),
                "question": question,
                "reveal": self._reveal(self.position) if self.position in self.responses else None,
                "answered": sorted(self.responses),
                "correct": self.correct,
                "attempted": self.attempted,
                "streak": self.streak,
                "best_streak": self.best_streak,
                "accuracy": self.accuracy,
                "qualified": self.qualified,
                "remaining_seconds": self.remaining_seconds(),
                "pace_remaining": self.pace_remaining(),
            }
