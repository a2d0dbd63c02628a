import json
import random

import pytest

from cdl_practice.models.question_model import LicenseClass
from cdl_practice.models.session_state import ExamSession, ExamStage
from cdl_practice.services.access import StoreAccessChecker
from cdl_practice.services.errors import (
    AccessDeniedError,
    ExamStateError,
    InvalidOptionError,
    InvalidPositionError,
)
from cdl_practice.services.exam_engine import EXAM_ID_RE
from cdl_practice.services.question_bank import QuestionBank
from cdl_practice.services.store import MemoryStore, StorageKeys

from conftest import make_question


class CountingStore(MemoryStore):
    def __init__(self, initial=None):
        super().__init__(initial)
        self.removed = []

    def remove(self, key):
        self.removed.append(key)
        super().remove(key)


def _saved(store) -> ExamSession:
    return ExamSession.decode(store.get(StorageKeys.ACTIVE_SESSION))


def _write_snapshot(store, clock, question_ids, end_offset_sec=3600, **overrides):
    end_at = int((clock() + end_offset_sec) * 1000)
    data = dict(
        license="A",
        endorsements=[],
        jurisdiction="TX",
        question_ids=question_ids,
        answers={},
        flags=[],
        current_position=0,
        end_at=end_at,
        started_at=end_at - 7200 * 1000,
        exam_id="DMV-123-4567-89",
    )
    data.update(overrides)
    store.set(StorageKeys.ACTIVE_SESSION, ExamSession(**data).to_json())
    return end_at


def _boot_and_start(engine, scheduler):
    engine.boot()
    scheduler.advance(2)
    engine.start()
    return engine


# ── 출제 ────────────────────────────────────────────────────────────────────

def test_fresh_session_samples_exam_length_eligible_questions(active_engine):
    assert active_engine.stage == ExamStage.ACTIVE
    assert active_engine.total == 70
    ids = [q.id for q in active_engine.questions]
    assert len(set(ids)) == 70
    for q in active_engine.questions:
        assert LicenseClass.A in q.license_classes
        assert q.endorsements is None


def test_sampling_is_deterministic_for_a_seed(make_engine, scheduler):
    first = _boot_and_start(make_engine(rng=random.Random(42)), scheduler)
    ids = [q.id for q in first.questions]
    first.close()

    other_store = MemoryStore()
    second = make_engine(rng=random.Random(42), store=other_store)
    second.boot()
    assert [q.id for q in second.questions] == ids


def test_empty_eligible_pool_falls_back_to_whole_bank(make_engine, store, scheduler):
    store.set(StorageKeys.USER_LEVEL, "D")
    engine = _boot_and_start(make_engine(), scheduler)
    assert engine.total == 70
    assert any(LicenseClass.D not in q.license_classes for q in engine.questions)


def test_small_pool_is_capped_at_pool_size(make_engine, scheduler):
    small = QuestionBank([make_question(i) for i in range(1, 11)])
    engine = _boot_and_start(make_engine(bank=small), scheduler)
    assert engine.total == 10


def test_invalid_profile_values_use_defaults(make_engine, store, scheduler):
    store.set(StorageKeys.USER_LEVEL, "Z")
    store.set(StorageKeys.USER_ENDORSEMENTS, "not json")
    store.set(StorageKeys.USER_STATE, "Texas")
    engine = make_engine()
    engine.boot()
    assert engine.profile.license == LicenseClass.A
    assert engine.profile.endorsements == []
    assert engine.profile.jurisdiction == "TX"


def test_endorsement_questions_need_a_held_endorsement(make_engine, store, scheduler):
    store.set(StorageKeys.USER_ENDORSEMENTS, json.dumps(["Air Brakes"]))
    engine = make_engine(exam_length=100)
    engine.boot()
    categories = {q.category for q in engine.questions}
    assert "Air Brakes" in categories
    assert "Passenger" not in categories


# ── 단계 전환 ───────────────────────────────────────────────────────────────

def test_boot_moves_to_manifest_after_fixed_delay(make_engine, scheduler):
    engine = make_engine()
    engine.boot()
    assert engine.stage == ExamStage.BOOT
    scheduler.advance(1.4)
    assert engine.stage == ExamStage.BOOT
    scheduler.advance(0.2)
    assert engine.stage == ExamStage.MANIFEST
    assert engine.is_resuming is False


def test_operations_are_rejected_outside_active(make_engine, scheduler):
    engine = make_engine()
    engine.boot()
    scheduler.advance(2)
    with pytest.raises(ExamStateError):
        engine.select(0, 1)
    with pytest.raises(ExamStateError):
        engine.toggle_flag(0)
    with pytest.raises(ExamStateError):
        engine.submit()


def test_boot_twice_is_rejected(make_engine):
    engine = make_engine()
    engine.boot()
    with pytest.raises(ExamStateError):
        engine.boot()


def test_start_sets_deadline_and_starts_one_ticker(active_engine, clock, scheduler):
    assert active_engine.end_at == int(clock() * 1000) + 7200 * 1000
    assert active_engine.started_at == int(clock() * 1000)
    assert len(scheduler.repeating) == 1
    assert active_engine.remaining_seconds() == 7200


def test_access_denied_without_entitlement(make_engine, store):
    engine = make_engine(access_checker=StoreAccessChecker(store))
    with pytest.raises(AccessDeniedError):
        engine.boot()


def test_lifetime_access_can_boot(make_engine, store, scheduler):
    store.set(StorageKeys.ACCESS, "lifetime")
    engine = make_engine(access_checker=StoreAccessChecker(store))
    engine.boot()
    scheduler.advance(2)
    assert engine.stage == ExamStage.MANIFEST


# ── 답안 / 플래그 / 이동 ────────────────────────────────────────────────────

def test_select_overwrites_and_persists(active_engine, store):
    active_engine.select(0, 2)
    assert _saved(store).answers == {0: 2}
    active_engine.select(0, 1)
    assert _saved(store).answers == {0: 1}


def test_select_validates_position_and_option(active_engine):
    with pytest.raises(InvalidPositionError):
        active_engine.select(70, 0)
    with pytest.raises(InvalidOptionError):
        active_engine.select(0, 4)
    assert active_engine.answers == {}


def test_toggle_flag_is_independent_of_answers(active_engine, store):
    assert active_engine.toggle_flag(5) is True
    assert 5 not in active_engine.answers
    assert _saved(store).flags == [5]
    assert active_engine.toggle_flag(5) is False
    assert _saved(store).flags == []


def test_go_to_clamps_and_persists(active_engine, store):
    assert active_engine.go_to(500) == 69
    assert _saved(store).current_position == 69
    assert active_engine.go_to(-3) == 0
    assert _saved(store).current_position == 0


def test_snapshot_json_uses_external_keys(active_engine, store):
    active_engine.select(3, 1)
    raw = json.loads(store.get(StorageKeys.ACTIVE_SESSION))
    assert set(raw) == {
        "license", "endorsements", "jurisdiction", "questionIds", "answers",
        "flags", "currentPosition", "endAt", "startedAt", "examId",
    }
    assert raw["answers"] == {"3": 1}
    assert raw["startedAt"] == raw["endAt"] - 7200 * 1000


# ── 이어하기 ────────────────────────────────────────────────────────────────

def test_resume_restores_session_verbatim(active_engine, make_engine, store, scheduler, clock):
    active_engine.select(0, 3)
    active_engine.select(12, 1)
    active_engine.toggle_flag(3)
    active_engine.go_to(10)
    before = active_engine.snapshot()
    active_engine.close()
    clock.advance(600)

    engine = make_engine(rng=random.Random(99))
    engine.boot()
    assert engine.resumed is True
    scheduler.advance(1)
    assert engine.stage == ExamStage.MANIFEST
    assert engine.is_resuming is True
    engine.start()

    after = engine.snapshot()
    assert after.question_ids == before.question_ids
    assert after.answers == before.answers
    assert after.flags == [3]
    assert after.current_position == 10
    assert after.end_at == before.end_at
    assert after.exam_id == before.exam_id
    assert engine.remaining_seconds() == 7200 - 601


def test_expired_snapshot_is_rejected(make_engine, store, clock, bank):
    old_end = _write_snapshot(store, clock, [1, 2, 3], end_offset_sec=-1)
    engine = make_engine()
    engine.boot()
    assert engine.resumed is False
    assert engine.total == 70
    assert store.get(StorageKeys.ACTIVE_SESSION) is None
    assert engine.end_at != old_end


def test_corrupt_snapshot_is_discarded_silently(make_engine, store):
    store.set(StorageKeys.ACTIVE_SESSION, "{not json")
    engine = make_engine()
    engine.boot()
    assert engine.resumed is False
    assert engine.total == 70
    assert store.get(StorageKeys.ACTIVE_SESSION) is None


def test_snapshot_with_unknown_question_is_rejected(make_engine, store, clock):
    _write_snapshot(store, clock, [1, 2, 9999])
    engine = make_engine()
    engine.boot()
    assert engine.resumed is False


def test_snapshot_with_out_of_range_answer_is_rejected(make_engine, store, clock):
    _write_snapshot(store, clock, [1, 2, 3], answers={1: 7})
    engine = make_engine()
    engine.boot()
    assert engine.resumed is False


def test_snapshot_position_outside_pool_fails_decode(store, clock):
    raw = json.dumps({
        "license": "A", "endorsements": [], "jurisdiction": "TX",
        "questionIds": [1, 2], "answers": {"5": 0}, "flags": [],
        "currentPosition": 0, "endAt": 2_000_000_000_000, "startedAt": 1, "examId": "DMV-000-0000-00",
    })
    assert ExamSession.decode(raw) is None


def test_snapshot_with_malformed_exam_id_is_rejected(make_engine, store, clock):
    store.set(StorageKeys.EXAM_ID, "DMV-111-2222-33")
    raw = json.dumps({
        "license": "A", "endorsements": [], "jurisdiction": "TX",
        "questionIds": [1, 2, 3], "answers": {}, "flags": [],
        "currentPosition": 0, "endAt": int((clock() + 3600) * 1000),
        "startedAt": 1, "examId": "bogus",
    })
    assert ExamSession.decode(raw) is None

    store.set(StorageKeys.ACTIVE_SESSION, raw)
    engine = make_engine()
    engine.boot()
    assert engine.resumed is False
    assert engine.exam_id == "DMV-111-2222-33"
    assert store.get(StorageKeys.EXAM_ID) == "DMV-111-2222-33"
    assert store.get(StorageKeys.ACTIVE_SESSION) is None


def test_deadline_passing_on_manifest_starts_fresh(make_engine, store, clock, scheduler):
    _write_snapshot(store, clock, [1, 2, 3], end_offset_sec=1, answers={0: 1})
    engine = make_engine()
    engine.boot()
    assert engine.resumed is True
    scheduler.advance(5)
    engine.start()
    assert engine.total == 70
    assert engine.answers == {}
    assert engine.remaining_seconds() == 7200


# ── 시험 id ─────────────────────────────────────────────────────────────────

def test_exam_id_is_minted_once_and_reused_until_completion(make_engine, store, scheduler):
    first = make_engine()
    first.boot()
    assert EXAM_ID_RE.match(first.exam_id)
    assert store.get(StorageKeys.EXAM_ID) == first.exam_id
    first.close()

    second = make_engine(rng=random.Random(1234))
    second.boot()
    assert second.exam_id == first.exam_id

    scheduler.advance(2)
    second.start()
    second.submit()
    scheduler.advance(2)
    assert store.get(StorageKeys.EXAM_ID) is None


# ── 제출 ────────────────────────────────────────────────────────────────────

def test_submit_is_idempotent(make_engine, scheduler):
    counting = CountingStore({StorageKeys.USER_LEVEL: "A"})
    engine = _boot_and_start(make_engine(store=counting), scheduler)

    assert engine.submit() is True
    report = engine.report
    assert engine.submit() is False
    assert engine.report is report
    assert engine.stage == ExamStage.SUBMITTING

    scheduler.advance(2)
    assert engine.stage == ExamStage.RESULTS
    assert engine.submit() is False
    assert counting.removed.count(StorageKeys.ACTIVE_SESSION) == 1
    assert len(json.loads(counting.get(StorageKeys.EXAM_HISTORY))) == 1


def test_submitting_keeps_snapshot_until_results(active_engine, store, scheduler):
    active_engine.select(0, 0)
    active_engine.submit()
    assert store.get(StorageKeys.ACTIVE_SESSION) is not None
    assert scheduler.repeating == []
    scheduler.advance(1.5)
    assert active_engine.stage == ExamStage.RESULTS
    assert store.get(StorageKeys.ACTIVE_SESSION) is None
    saved = json.loads(store.get(StorageKeys.LAST_EXAM_REPORT))
    assert saved["score"] == active_engine.report.score
    assert saved["examId"] == active_engine.exam_id


def test_timeout_via_tick_submits_exactly_once(active_engine, clock, scheduler):
    q0 = active_engine.questions[0]
    active_engine.select(0, q0.correct_index)
    active_engine.end_at = int(clock() * 1000) - 1000

    active_engine.tick()
    assert active_engine.stage == ExamStage.SUBMITTING
    report = active_engine.report
    active_engine.tick()
    assert active_engine.report is report
    assert report.correct == 1
    assert report.answered == 1
    assert report.elapsed_minutes == 120


def test_countdown_expiry_auto_submits(active_engine, scheduler):
    scheduler.advance(7199)
    assert active_engine.stage == ExamStage.ACTIVE
    assert active_engine.remaining_seconds() == 1
    scheduler.advance(1)
    assert active_engine.stage == ExamStage.SUBMITTING
    scheduler.advance(2)
    assert active_engine.stage == ExamStage.RESULTS
    assert active_engine.report.score == 0
    assert active_engine.report.passed is False


def test_select_after_deadline_forces_submission(active_engine, clock):
    clock.advance(7200)
    with pytest.raises(ExamStateError):
        active_engine.select(0, 0)
    assert active_engine.stage == ExamStage.SUBMITTING


def test_close_keeps_snapshot_and_cancels_timers(active_engine, store, scheduler):
    active_engine.select(1, 1)
    active_engine.close()
    assert scheduler.pending == []
    assert _saved(store).answers == {1: 1}
    active_engine.tick()
    assert active_engine.stage == ExamStage.ACTIVE


def test_close_while_submitting_completes_results(active_engine, store, scheduler):
    active_engine.submit()
    active_engine.close()
    assert active_engine.stage == ExamStage.RESULTS
    assert store.get(StorageKeys.ACTIVE_SESSION) is None
    assert scheduler.pending == []


# ── 채점 시나리오 ───────────────────────────────────────────────────────────

def _answer_correctly(engine, count):
    for pos in range(count):
        engine.select(pos, engine.questions[pos].correct_index)


def test_all_correct_scores_100(active_engine, scheduler):
    _answer_correctly(active_engine, 70)
    active_engine.submit()
    assert active_engine.report.score == 100
    assert active_engine.report.passed is True


def test_56_of_70_passes_at_boundary(active_engine):
    _answer_correctly(active_engine, 56)
    active_engine.submit()
    assert active_engine.report.score == 80
    assert active_engine.report.passed is True
    assert active_engine.report.answered == 56


def test_55_of_70_fails(active_engine):
    _answer_correctly(active_engine, 55)
    active_engine.submit()
    assert active_engine.report.score == 79
    assert active_engine.report.passed is False
    assert active_engine.report.weakest_category == active_engine.questions[55].category


def test_question_view_hides_answer(active_engine):
    active_engine.select(2, 3)
    view = active_engine.question_view(2)
    assert view["selected_index"] == 3
    assert "correct_index" not in view
    assert "explanation" not in view
