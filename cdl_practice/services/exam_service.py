"""
services/exam_service.py

시험 채점 및 결과 분석 비즈니스 로직.
순수 Python 함수로 구성. 저장소, 전역 상태 변경 없음.
"""

import math
from collections import defaultdict
from typing import Dict, List, Mapping, Optional

from config import PASS_THRESHOLD
from cdl_practice.models.question_model import Question
from cdl_practice.models.score_report import NO_WEAKNESS, CategoryScore, ScoreReport


def count_correct(
    questions: List[Question],
    answers: Mapping[int, int],
) -> int:
    """
    정답 수를 센다.

    정답 판정 기준: answers[위치] == 해당 위치 문항의 correct_index.
    응답하지 않은 위치(키 없음)는 오답으로 처리.
    """
    return sum(
        1
        for pos, q in enumerate(questions)
        if q.is_correct(answers.get(pos))
    )


def calculate_score(
    questions: List[Question],
    answers: Mapping[int, int],
) -> int:
    """
    사용자 답안을 채점하여 100점 만점 정수 점수를 반환한다.

    Returns:
        round(정답 수 / 전체 문항 수 × 100).
        questions가 빈 리스트이면 0.
    """
    if not questions:
        return 0
    return round(count_correct(questions, answers) / len(questions) * 100)


def is_passed(score: int, pass_score: int = PASS_THRESHOLD) -> bool:
    """score >= pass_score 이면 합격 (경계 포함)."""
    return score >= pass_score


def first_weak_category(
    questions: List[Question],
    answers: Mapping[int, int],
) -> str:
    """
    위치 순서상 첫 번째 오답(미응답 포함) 문항의 분류를 반환한다.
    오답이 없으면 NO_WEAKNESS.
    """
    for pos, q in enumerate(questions):
        if not q.is_correct(answers.get(pos)):
            return q.category
    return NO_WEAKNESS


def calculate_category_breakdown(
    questions: List[Question],
    answers: Mapping[int, int],
) -> Dict[str, CategoryScore]:
    """
    분류별 점수를 계산하여 반환한다.

    Returns:
        {category: CategoryScore(total, correct, accuracy)}, 분류명 기준 정렬.
    """
    buckets: Dict[str, Dict[str, int]] = defaultdict(lambda: {"total": 0, "correct": 0})

    for pos, q in enumerate(questions):
        buckets[q.category]["total"] += 1
        if q.is_correct(answers.get(pos)):
            buckets[q.category]["correct"] += 1

    result: Dict[str, CategoryScore] = {}
    for cat in sorted(buckets):
        b = buckets[cat]
        accuracy = round(b["correct"] / b["total"] * 100) if b["total"] else 0
        result[cat] = CategoryScore(total=b["total"], correct=b["correct"], accuracy=accuracy)
    return result


def elapsed_minutes(duration_sec: int, remaining_sec: float) -> int:
    """소요 시간(분, 올림). 남은 시간이 음수면 0으로 본다."""
    used = duration_sec - max(0.0, remaining_sec)
    return max(0, math.ceil(used / 60))


def build_score_report(
    questions: List[Question],
    answers: Mapping[int, int],
    minutes: int,
    exam_id: Optional[str] = None,
    pass_score: int = PASS_THRESHOLD,
) -> ScoreReport:
    """
    완료된 세션의 답안으로 성적표를 만든다.
    같은 입력에는 항상 같은 성적표를 반환한다.
    """
    score = calculate_score(questions, answers)
    return ScoreReport(
        exam_id=exam_id,
        total=len(questions),
        correct=count_correct(questions, answers),
        answered=sum(1 for pos in answers if 0 <= pos < len(questions)),
        score=score,
        passed=is_passed(score, pass_score),
        weakest_category=first_weak_category(questions, answers),
        elapsed_minutes=minutes,
        breakdown=calculate_category_breakdown(questions, answers),
    )
