"""
services/question_bank.py

정적 문제은행. 면허/추가면허 조건으로 출제 대상을 거르고 무작위 추출한다.
Public API:
  - QuestionBank.from_file(path) / QuestionBank(questions)
  - get(id), resolve(ids)
  - eligible(profile), sample(profile, n, rng)
  - by_category(category), categories(profile)
"""

import json
import logging
import random
from typing import Dict, Iterable, List, Optional

from pydantic import ValidationError

from config import QUESTION_BANK_FILE
from cdl_practice.models.profile_model import DriverProfile
from cdl_practice.models.question_model import Question

logger = logging.getLogger(__name__)


def is_eligible(question: Question, profile: DriverProfile) -> bool:
    """
    출제 대상 판정: 면허 등급이 포함되고,
    추가면허 요구가 있으면 그 중 하나 이상을 보유해야 한다.
    """
    if profile.license not in question.license_classes:
        return False
    return profile.holds(question.endorsements)


class QuestionBank:
    def __init__(self, questions: Iterable[Question]):
        self._questions: List[Question] = list(questions)
        self._by_id: Dict[int, Question] = {}
        for q in self._questions:
            if q.id in self._by_id:
                raise ValueError(f"중복된 문제 id: {q.id}")
            self._by_id[q.id] = q

    @classmethod
    def from_file(cls, path: str = QUESTION_BANK_FILE) -> "QuestionBank":
        """JSON 배열 파일에서 문제은행을 읽는다. 검증에 실패한 문항은 건너뛴다."""
        with open(path, "r", encoding="utf-8") as f:
            raw = json.load(f)

        questions: List[Question] = []
        for item in raw:
            try:
                questions.append(Question.model_validate(item))
            except ValidationError as e:
                logger.warning(f"문항 검증 실패 (id={item.get('id')}), 건너뜀: {e.error_count()}건")
        logger.info(f"문제은행 로드 완료: {len(questions)}문항 ({path})")
        return cls(questions)

    def __len__(self) -> int:
        return len(self._questions)

    def __iter__(self):
        return iter(self._questions)

    def get(self, question_id: int) -> Optional[Question]:
        return self._by_id.get(question_id)

    def resolve(self, question_ids: Iterable[int]) -> Optional[List[Question]]:
        """id 목록을 문항으로 바꾼다. 하나라도 없으면 None."""
        resolved: List[Question] = []
        for qid in question_ids:
            q = self._by_id.get(qid)
            if q is None:
                return None
            resolved.append(q)
        return resolved

    def eligible(self, profile: DriverProfile) -> List[Question]:
        return [q for q in self._questions if is_eligible(q, profile)]

    def sample(self, profile: DriverProfile, n: int, rng: random.Random) -> List[Question]:
        """
        출제 대상에서 무작위로 n문항을 뽑는다.

        출제 대상이 하나도 없으면 전체 문제은행에서 뽑는다 (시험 진입을 막지 않음).
        풀이 n보다 작으면 풀 크기만큼만 뽑는다.
        """
        pool = self.eligible(profile)
        if not pool:
            logger.warning(
                f"출제 대상 문항 없음 (면허 {profile.license.value}, "
                f"추가면허 {[e.value for e in profile.endorsements]}) → 전체 문제은행 사용"
            )
            pool = list(self._questions)
        elif len(pool) < n:
            logger.info(f"출제 대상 {len(pool)}문항 < 요청 {n}문항 → 풀 크기로 제한")

        shuffled = list(pool)
        rng.shuffle(shuffled)
        return shuffled[:n]

    def by_category(self, category: str) -> List[Question]:
        return [q for q in self._questions if q.category == category]

    def categories(self, profile: Optional[DriverProfile] = None) -> List[str]:
        source = self.eligible(profile) if profile is not None else self._questions
        return sorted({q.category for q in source})
