import json
import random
from typing import Callable, List, Optional

import pytest

from cdl_practice.models.question_model import Question
from cdl_practice.services.exam_engine import ExamSessionEngine
from cdl_practice.services.question_bank import QuestionBank
from cdl_practice.services.store import MemoryStore, StorageKeys

CORE_CATEGORIES = ["Vehicle Control", "Safety Systems", "Pre-Trip Inspection", "Driving Safely"]
T0 = 1_700_000_000.0


class FakeClock:
    def __init__(self, start: float = T0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class _Job:
    def __init__(self, due: float, interval: Optional[float], callback: Callable[[], None]):
        self.due = due
        self.interval = interval
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualScheduler:
    """가짜 시계에 맞춰 콜백을 실행하는 테스트용 스케줄러."""

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.jobs: List[_Job] = []

    def schedule_repeating(self, interval_ms, callback):
        job = _Job(self.clock() + interval_ms / 1000, interval_ms / 1000, callback)
        self.jobs.append(job)
        return job

    def schedule_once(self, delay_ms, callback):
        job = _Job(self.clock() + delay_ms / 1000, None, callback)
        self.jobs.append(job)
        return job

    @property
    def pending(self) -> List[_Job]:
        return [j for j in self.jobs if not j.cancelled]

    @property
    def repeating(self) -> List[_Job]:
        return [j for j in self.pending if j.interval is not None]

    def advance(self, seconds: float) -> None:
        target = self.clock.now + seconds
        while True:
            due = [j for j in self.pending if j.due <= target]
            if not due:
                break
            job = min(due, key=lambda j: j.due)
            self.clock.now = max(self.clock.now, job.due)
            if job.interval is None:
                job.cancelled = True
            else:
                job.due += job.interval
            job.callback()
        self.clock.now = target


def make_question(qid: int, category: str = "Vehicle Control", license_classes=("A", "B", "C"),
                  endorsements=None, correct_index: Optional[int] = None) -> Question:
    return Question(
        id=qid,
        license_classes=list(license_classes),
        endorsements=list(endorsements) if endorsements else None,
        category=category,
        text=f"Question {qid}",
        options=[f"Option {qid}-{i}" for i in range(4)],
        correct_index=qid % 4 if correct_index is None else correct_index,
        explanation=f"Explanation {qid}",
    )


def build_questions() -> List[Question]:
    questions = [make_question(i, CORE_CATEGORIES[i % len(CORE_CATEGORIES)]) for i in range(1, 81)]
    questions += [make_question(i, "Air Brakes", endorsements=["Air Brakes"]) for i in range(81, 91)]
    questions += [
        make_question(i, "Passenger", license_classes=("B", "C"), endorsements=["Passenger"])
        for i in range(91, 101)
    ]
    return questions


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def scheduler(clock):
    return ManualScheduler(clock)


@pytest.fixture
def bank():
    return QuestionBank(build_questions())


@pytest.fixture
def store():
    return MemoryStore({
        StorageKeys.USER_LEVEL: "A",
        StorageKeys.USER_ENDORSEMENTS: json.dumps([]),
        StorageKeys.USER_STATE: "TX",
    })


@pytest.fixture
def make_engine(bank, store, scheduler, clock):
    def _make(**kwargs) -> ExamSessionEngine:
        kwargs.setdefault("rng", random.Random(7))
        return ExamSessionEngine(kwargs.pop("bank", bank), kwargs.pop("store", store), scheduler,
                                 clock=clock, **kwargs)
    return _make


@pytest.fixture
def active_engine(make_engine, scheduler):
    """boot → manifest → active 까지 진행한 엔진."""
    engine = make_engine()
    engine.boot()
    scheduler.advance(2)
    engine.start()
    return engine
