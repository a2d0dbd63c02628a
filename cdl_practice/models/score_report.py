"""
models/score_report.py

채점 결과 값 객체들. 한 번 만들어지면 변경되지 않는다.
"""

from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

NO_WEAKNESS = "No weakness detected"


class CategoryScore(BaseModel):
    model_config = ConfigDict(frozen=True)

    total: int
    correct: int
    accuracy: int


class ScoreReport(BaseModel):
    """
    완료된 실전 모의고사 한 회차의 성적표.

    weakest_category는 위치 순서상 첫 번째 오답 문항의 분류이며,
    오답이 없으면 NO_WEAKNESS.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    exam_id: Optional[str] = Field(None, alias="examId")
    total: int
    correct: int
    answered: int
    score: int
    passed: bool
    weakest_category: str = Field(NO_WEAKNESS, alias="weakestCategory")
    elapsed_minutes: int = Field(0, alias="elapsedMinutes")
    breakdown: Dict[str, CategoryScore] = Field(default_factory=dict)


class AnswerRecord(BaseModel):
    """진단 퀵체크 답안 로그 한 줄. selectedIndex -1은 시간 초과로 미응답."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: int
    category: str
    is_correct: bool = Field(..., alias="isCorrect")
    text: str
    options: List[str]
    explanation: str
    selected_index: int = Field(..., alias="selectedIndex")
    correct_index: int = Field(..., alias="correctIndex")


class ExamHistoryItem(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    ts: int
    score: int
    passed: bool
    total: int = 0
    correct: int = 0
    minutes: int = 0
    exam_id: Optional[str] = Field(None, alias="examId")
