from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class LicenseClass(str, Enum):
    A = "A"
    B = "B"
    C = "C"
    D = "D"


class Endorsement(str, Enum):
    AIR_BRAKES = "Air Brakes"
    HAZMAT = "Hazmat"
    TANKER = "Tanker"
    DOUBLES_TRIPLES = "Doubles/Triples"
    PASSENGER = "Passenger"
    SCHOOL_BUS = "School Bus"


class Question(BaseModel):
    """
    CDL 필기시험 문제 모델
    Pydantic v2 적용, 생성 후 변경 불가
    """
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: int = Field(
        ...,
        gt=0,
        description="문제 번호 (고유 식별자)"
    )
    license_classes: List[LicenseClass] = Field(
        ...,
        alias="licenseClasses",
        min_length=1,
        description="이 문제가 출제되는 면허 등급"
    )
    endorsements: Optional[List[Endorsement]] = Field(
        None,
        description="필요 추가면허. 있으면 그 중 하나 이상을 보유해야 출제 대상"
    )
    category: str = Field(
        ...,
        min_length=1,
        description="주제 분류 (취약 영역 집계용)"
    )
    text: str = Field(
        ...,
        min_length=1,
        description="발문"
    )
    options: List[str] = Field(
        ...,
        description="보기 리스트 (4지선다)"
    )
    correct_index: int = Field(
        ...,
        alias="correctIndex",
        ge=0,
        description="정답 보기 인덱스 (0-based)"
    )
    explanation: str = Field(
        "",
        description="해설"
    )

    @field_validator('options')
    @classmethod
    def validate_options_length(cls, v: List[str]) -> List[str]:
        """
        검증 로직 1: 보기는 정확히 4개여야 한다.
        """
        if len(v) != 4:
            raise ValueError(f"보기(options)는 4개여야 합니다. (현재 {len(v)}개)")
        return v

    @model_validator(mode='after')
    def validate_correct_index(self) -> 'Question':
        """
        검증 로직 2: 정답 인덱스는 보기 범위 안에 있어야 한다.
        """
        if self.correct_index >= len(self.options):
            raise ValueError(
                f"정답 인덱스({self.correct_index})가 보기 범위(0~{len(self.options) - 1})를 벗어났습니다."
            )
        return self

    def option_count(self) -> int:
        return len(self.options)

    def is_correct(self, option_index: Optional[int]) -> bool:
        return option_index is not None and option_index == self.correct_index
