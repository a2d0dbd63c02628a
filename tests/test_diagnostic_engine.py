import json
import random
import re

import pytest

from cdl_practice.services.diagnostic_engine import (
    DEFAULT_WEAKEST_DOMAIN,
    DiagnosticEngine,
    DiagnosticGate,
    DiagnosticStage,
    pick_diagnostic_questions,
    pick_weakest_domain,
    status_from_score,
)
from cdl_practice.services.errors import ExamStateError, InvalidOptionError
from cdl_practice.services.question_bank import QuestionBank
from cdl_practice.services.store import StorageKeys

from conftest import make_question


@pytest.fixture
def make_diagnostic(bank, store, scheduler, clock):
    def _make(**kwargs):
        kwargs.setdefault("rng", random.Random(3))
        return DiagnosticEngine(kwargs.pop("bank", bank), store, scheduler, clock=clock, **kwargs)
    return _make


def _wrong(q):
    return (q.correct_index + 1) % 4


# ── 진입 ────────────────────────────────────────────────────────────────────

def test_entitled_user_goes_to_dashboard(make_diagnostic, store):
    store.set(StorageKeys.ACCESS, "subscription")
    engine = make_diagnostic()
    assert engine.begin() == DiagnosticGate.DASHBOARD
    assert engine.stage is None


def test_completed_diagnostic_goes_to_paywall(make_diagnostic, store):
    store.set(StorageKeys.DIAGNOSTIC_SCORE, "60")
    engine = make_diagnostic()
    assert engine.begin() == DiagnosticGate.PAYWALL
    assert engine.questions == []


def test_begin_picks_questions_and_stamps_session(make_diagnostic, store, scheduler):
    engine = make_diagnostic()
    assert engine.begin() is None
    assert engine.stage == DiagnosticStage.QUIZ
    assert len(engine.questions) == 5
    assert len({q.category for q in engine.questions[:3]}) == 3
    assert re.match(r"^S-[0-9A-F]{8}-[0-9A-F]{6}$", store.get(StorageKeys.SESSION_ID))
    assert store.get(StorageKeys.DIAGNOSTIC_STARTED_AT).endswith("Z")
    assert engine.remaining_seconds() == 300
    assert len(scheduler.repeating) == 1


def test_begin_twice_is_rejected(make_diagnostic):
    engine = make_diagnostic()
    engine.begin()
    with pytest.raises(ExamStateError):
        engine.begin()


# ── 응답 / 결과 ─────────────────────────────────────────────────────────────

def test_answering_all_records_results(make_diagnostic, store, scheduler):
    engine = make_diagnostic()
    engine.begin()
    for i in range(5):
        q = engine.questions[i]
        engine.answer(q.correct_index if i < 3 else _wrong(q))

    assert engine.stage == DiagnosticStage.ANALYZING
    assert engine.score == 60
    assert store.get(StorageKeys.DIAGNOSTIC_SCORE) == "60"
    assert store.get(StorageKeys.WEAKEST_DOMAIN) == engine.weakest

    answers = json.loads(store.get(StorageKeys.DIAGNOSTIC_ANSWERS))
    assert len(answers) == 5
    assert answers[0]["isCorrect"] is True
    assert answers[4]["selectedIndex"] == _wrong(engine.questions[4])

    breakdown = json.loads(store.get(StorageKeys.DIAGNOSTIC_BREAKDOWN))
    assert sum(b["total"] for b in breakdown.values()) == 5

    meta = json.loads(store.get(StorageKeys.DIAGNOSTIC_META))
    assert meta["sessionId"] == store.get(StorageKeys.SESSION_ID)
    assert meta["license"] == "A"
    assert meta["state"] == "TX"
    assert meta["timeLimitSec"] == 300
    assert meta["timeUsedSec"] == 0

    assert scheduler.repeating == []
    scheduler.advance(5.85)
    assert engine.stage == DiagnosticStage.DONE
    assert engine.state()["result"]["status"] == {"label": "NOT READY", "risk": "MED"}


def test_answer_rejects_bad_option(make_diagnostic):
    engine = make_diagnostic()
    engine.begin()
    with pytest.raises(InvalidOptionError):
        engine.answer(9)
    assert engine.current_index == 0


def test_timeout_marks_remaining_unanswered(make_diagnostic, store, scheduler):
    engine = make_diagnostic()
    engine.begin()
    engine.answer(engine.questions[0].correct_index)
    engine.answer(engine.questions[1].correct_index)

    scheduler.advance(300)
    assert engine.stage == DiagnosticStage.ANALYZING
    assert [r.selected_index for r in engine.records[2:]] == [-1, -1, -1]
    assert engine.score == 40

    meta = json.loads(store.get(StorageKeys.DIAGNOSTIC_META))
    assert meta["timeUsedSec"] == 300

    with pytest.raises(ExamStateError):
        engine.answer(0)


def test_results_are_written_once(make_diagnostic, store, scheduler):
    engine = make_diagnostic()
    engine.begin()
    for q in engine.questions:
        engine.answer(q.correct_index)
    store.set(StorageKeys.DIAGNOSTIC_SCORE, "sentinel")
    engine.tick()
    scheduler.advance(10)
    assert store.get(StorageKeys.DIAGNOSTIC_SCORE) == "sentinel"


def test_missed_preview_puts_weakest_first(make_diagnostic):
    engine = make_diagnostic()
    engine.begin()
    for q in engine.questions:
        engine.answer(_wrong(q))
    missed = engine.missed_preview()
    assert len(missed) == 3
    assert missed[0].category == engine.weakest


def test_empty_bank_finishes_immediately(make_diagnostic, scheduler):
    engine = make_diagnostic(bank=QuestionBank([]))
    engine.begin()
    assert engine.stage == DiagnosticStage.ANALYZING
    assert engine.score == 0
    assert engine.weakest == DEFAULT_WEAKEST_DOMAIN


# ── 순수 함수 ───────────────────────────────────────────────────────────────

def test_first_picks_span_distinct_categories():
    pool = [make_question(i, "Air Brakes") for i in range(1, 20)]
    pool += [make_question(100, "Hazardous Materials"), make_question(101, "Tank Vehicles")]
    picked = pick_diagnostic_questions(pool, 5, random.Random(0))
    assert len(picked) == 5
    assert len({q.category for q in picked[:3]}) == 3
    assert len({q.id for q in picked}) == 5


def test_pick_fills_from_remaining_when_categories_run_out():
    pool = [make_question(i, "Air Brakes") for i in range(1, 8)]
    picked = pick_diagnostic_questions(pool, 5, random.Random(0))
    assert len(picked) == 5
    assert len({q.id for q in picked}) == 5


def test_weakest_domain_breaks_ties_by_total():
    breakdown = {
        "Air Brakes": {"total": 2, "correct": 1, "accuracy": 50},
        "Vehicle Control": {"total": 4, "correct": 2, "accuracy": 50},
        "Driving Safely": {"total": 1, "correct": 1, "accuracy": 100},
    }
    assert pick_weakest_domain(breakdown) == "Vehicle Control"
    assert pick_weakest_domain({}) == DEFAULT_WEAKEST_DOMAIN


@pytest.mark.parametrize("score,label", [
    (100, "PASS READY"),
    (80, "PASS READY"),
    (60, "NOT READY"),
    (40, "HIGH RISK"),
])
def test_status_from_score(score, label):
    assert status_from_score(score)["label"] == label
