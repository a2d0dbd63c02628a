"""
models/session_state.py

실전 모의고사 진행 상태를 담는 OMR 카드 모델.
Pydantic BaseModel 기반. 저장소 스냅샷 직렬화/역직렬화 및 타입 안전성 확보.
UI 코드 없음.

스냅샷 JSON 키는 대시보드/프로필 화면과의 호환을 위해 camelCase를 유지한다:
  {license, endorsements, jurisdiction, questionIds[], answers{position:index},
   flags[], currentPosition, endAt, startedAt, examId}
"""

from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from cdl_practice.models.profile_model import DriverProfile
from cdl_practice.models.question_model import Endorsement, LicenseClass

EXAM_ID_PATTERN = r"^DMV-\d{3}-\d{4}-\d{2}$"


class ExamStage(str, Enum):
    BOOT = "boot"
    MANIFEST = "manifest"
    ACTIVE = "active"
    SUBMITTING = "submitting"
    RESULTS = "results"


class ExamSession(BaseModel):
    """
    사용자의 시험 세션 전체 상태를 표현하는 모델.

    Attributes:
        license / endorsements / jurisdiction: 세션 시작 시점의 운전자 프로필.
        question_ids:     출제 문항 id 목록. 생성 후 변경되지 않는다.
        answers:          답안지. {문항 위치: 선택한 보기 인덱스}. 응답한 위치만 존재.
        flags:            "나중에 검토" 표시한 문항 위치 (응답 여부와 무관).
        current_position: 현재 화면에 표시 중인 문항 위치.
        end_at:           마감 시각 (epoch ms). 시작 시 한 번 계산되고 이어하기 때는 그대로 복원.
        started_at:       end_at − 제한시간 (정보용).
        exam_id:          사람이 읽을 수 있는 시험 식별자 (DMV-###-####-##).
    """

    model_config = ConfigDict(populate_by_name=True)

    license: LicenseClass
    endorsements: List[Endorsement] = Field(default_factory=list)
    jurisdiction: str = Field(..., pattern=r"^[A-Z]{2}$")
    question_ids: List[int] = Field(..., alias="questionIds", min_length=1)
    answers: Dict[int, int] = Field(default_factory=dict)
    flags: List[int] = Field(default_factory=list)
    current_position: int = Field(0, alias="currentPosition", ge=0)
    end_at: int = Field(..., alias="endAt", gt=0)
    started_at: int = Field(..., alias="startedAt")
    exam_id: str = Field(..., alias="examId", pattern=EXAM_ID_PATTERN)

    @model_validator(mode='after')
    def validate_positions(self) -> 'ExamSession':
        """
        답안/플래그/현재 위치가 모두 [0, N) 범위 안에 있어야 한다.
        부분 복구는 하지 않는다. 하나라도 어긋나면 스냅샷 전체가 무효.
        """
        n = len(self.question_ids)
        if len(set(self.question_ids)) != n:
            raise ValueError("questionIds에 중복이 있습니다.")
        for pos, opt in self.answers.items():
            if not (0 <= pos < n):
                raise ValueError(f"답안 위치 {pos}가 범위를 벗어났습니다.")
            if opt < 0:
                raise ValueError(f"위치 {pos}의 보기 인덱스가 음수입니다.")
        for pos in self.flags:
            if not (0 <= pos < n):
                raise ValueError(f"플래그 위치 {pos}가 범위를 벗어났습니다.")
        if self.current_position >= n:
            raise ValueError(f"현재 위치 {self.current_position}가 범위를 벗어났습니다.")
        return self

    @property
    def profile(self) -> DriverProfile:
        return DriverProfile(
            license=self.license,
            endorsements=self.endorsements,
            jurisdiction=self.jurisdiction,
        )

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)

    @classmethod
    def decode(cls, raw: Optional[str]) -> Optional['ExamSession']:
        """
        엄격 디코드. 실패하면 None ("이전 세션 없음")을 반환한다.
        """
        if not raw:
            return None
        try:
            return cls.model_validate_json(raw)
        except ValidationError:
            return None
