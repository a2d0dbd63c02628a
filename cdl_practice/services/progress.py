"""
services/progress.py

학습 진도 기록과 집계.
  - 숙달 문항 id 목록 (중복 없이 추가만)
  - 주제별 드릴 답안 맵 {category: {questionId: selectedIndex}}
  - 실전 모의고사 이력과 프로필 통계 (합격률, 연속 합격, 준비도)
  - 주제별 숙달률과 숙달 기준 취약 영역
"""

import logging
from typing import Dict, List, Optional

from pydantic import ValidationError

from cdl_practice.models.profile_model import DriverProfile
from cdl_practice.models.score_report import ExamHistoryItem, ScoreReport
from cdl_practice.services.question_bank import QuestionBank
from cdl_practice.services.store import KeyValueStore, StorageKeys, load_json, save_json

logger = logging.getLogger(__name__)

HISTORY_LIMIT = 12
MASTERY_MIN_QUESTIONS = 5       # 숙달 취약 영역 후보가 되려면 필요한 최소 문항 수
DEFAULT_MASTERY_WEAKEST = "Air Brakes"


def _clamp(n: int, lo: int, hi: int) -> int:
    return max(lo, min(hi, n))


# ── 숙달 문항 ────────────────────────────────────────────────────────────────

def load_mastered_ids(store: KeyValueStore) -> List[int]:
    raw = load_json(store, StorageKeys.MASTERED_IDS, [])
    if not isinstance(raw, list):
        return []
    return [x for x in raw if isinstance(x, int) and not isinstance(x, bool)]


def add_mastered(store: KeyValueStore, question_id: int) -> bool:
    """숙달 목록에 추가한다. 이미 있으면 아무것도 쓰지 않고 False."""
    mastered = load_mastered_ids(store)
    if question_id in mastered:
        return False
    mastered.append(question_id)
    save_json(store, StorageKeys.MASTERED_IDS, mastered)
    return True


# ── 드릴 답안 맵 ─────────────────────────────────────────────────────────────

def load_drill_answers(store: KeyValueStore) -> Dict[str, Dict[str, int]]:
    raw = load_json(store, StorageKeys.DRILL_ANSWERS, {})
    return raw if isinstance(raw, dict) else {}


def record_drill_answer(
    store: KeyValueStore,
    category: str,
    question_id: int,
    selected_index: int,
) -> None:
    answers = load_drill_answers(store)
    per_cat = answers.get(category)
    if not isinstance(per_cat, dict):
        per_cat = {}
    per_cat[str(question_id)] = selected_index
    answers[category] = per_cat
    save_json(store, StorageKeys.DRILL_ANSWERS, answers)


# ── 실전 모의고사 이력 ───────────────────────────────────────────────────────

def append_exam_history(store: KeyValueStore, report: ScoreReport, ts: int) -> None:
    history = load_json(store, StorageKeys.EXAM_HISTORY, [])
    if not isinstance(history, list):
        history = []
    item = ExamHistoryItem(
        ts=ts,
        score=report.score,
        passed=report.passed,
        total=report.total,
        correct=report.correct,
        minutes=report.elapsed_minutes,
        exam_id=report.exam_id,
    )
    history.append(item.model_dump(by_alias=True))
    save_json(store, StorageKeys.EXAM_HISTORY, history)


def load_exam_history(store: KeyValueStore) -> List[ExamHistoryItem]:
    """유효한 항목만, 최신순으로 최대 HISTORY_LIMIT개."""
    raw = load_json(store, StorageKeys.EXAM_HISTORY, [])
    if not isinstance(raw, list):
        return []
    items: List[ExamHistoryItem] = []
    for entry in raw:
        try:
            items.append(ExamHistoryItem.model_validate(entry))
        except ValidationError:
            continue
    items.sort(key=lambda h: h.ts, reverse=True)
    return items[:HISTORY_LIMIT]


def _readiness_label(score: int) -> str:
    if score >= 85:
        return "READY"
    if score >= 70:
        return "NEAR READY"
    return "IN TRAINING"


def profile_stats(history: List[ExamHistoryItem]) -> Dict[str, object]:
    """
    최신순 이력으로 프로필 통계를 만든다.

    streak는 가장 최근 회차부터 연속 합격한 횟수.
    trend는 최근 3회 평균과 그 이전 3회 평균의 차이.
    """
    exams = len(history)
    passed = sum(1 for h in history if h.passed)
    pass_rate = round(passed / exams * 100) if exams else 0
    best = max((h.score for h in history), default=0)
    last_score = history[0].score if history else 0

    streak = 0
    for h in history:
        if not h.passed:
            break
        streak += 1

    def _avg(items: List[ExamHistoryItem]) -> int:
        return round(sum(h.score for h in items) / len(items)) if items else 0

    recent_avg = _avg(history[:3])
    prior_avg = _avg(history[3:6])

    readiness = _clamp(
        round(pass_rate * 0.7 + _clamp(best - 80, 0, 20) + _clamp(streak * 4, 0, 12)),
        0,
        100,
    )

    return {
        "exams": exams,
        "passed": passed,
        "pass_rate": pass_rate,
        "best": best,
        "streak": streak,
        "last_score": last_score,
        "trend": {"recent_avg": recent_avg, "prior_avg": prior_avg, "delta": recent_avg - prior_avg},
        "readiness": readiness,
        "readiness_label": _readiness_label(readiness),
    }


# ── 주제별 숙달 ──────────────────────────────────────────────────────────────

def category_mastery(
    bank: QuestionBank,
    profile: DriverProfile,
    mastered_ids: List[int],
) -> Dict[str, Dict[str, int]]:
    mastered = set(mastered_ids)
    relevant = bank.eligible(profile)
    result: Dict[str, Dict[str, int]] = {}
    for cat in sorted({q.category for q in relevant}):
        cat_qs = [q for q in relevant if q.category == cat]
        done = sum(1 for q in cat_qs if q.id in mastered)
        pct = round(done / len(cat_qs) * 100) if cat_qs else 0
        result[cat] = {"total": len(cat_qs), "mastered": done, "pct": pct}
    return result


def mastery_weakest_domain(
    bank: QuestionBank,
    profile: DriverProfile,
    mastered_ids: List[int],
) -> Dict[str, object]:
    """
    숙달률이 가장 낮은 분류 (MASTERY_MIN_QUESTIONS 문항 이상인 분류만 후보).
    severity = clamp(100 - pct, 15, 95), 후보가 없으면 60 기준.
    """
    weakest: Optional[str] = None
    weakest_pct = 101
    for cat, st in category_mastery(bank, profile, mastered_ids).items():
        if st["total"] < MASTERY_MIN_QUESTIONS:
            continue
        if st["pct"] < weakest_pct:
            weakest, weakest_pct = cat, st["pct"]

    if weakest is None:
        return {"domain": DEFAULT_MASTERY_WEAKEST, "severity": _clamp(100 - 60, 15, 95)}
    return {"domain": weakest, "severity": _clamp(100 - weakest_pct, 15, 95)}


def sync_weakest_domain(store: KeyValueStore, bank: QuestionBank, profile: DriverProfile) -> Dict[str, object]:
    """숙달 기준 취약 영역을 계산해 외부 화면용 키에 기록한다."""
    result = mastery_weakest_domain(bank, profile, load_mastered_ids(store))
    store.set(StorageKeys.WEAKEST_DOMAIN, str(result["domain"]))
    store.set(StorageKeys.WEAKEST_SEVERITY, str(result["severity"]))
    return result
