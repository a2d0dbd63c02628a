"""
models/profile_model.py

운전자 프로필 (면허 등급, 추가면허, 관할 주).
세션 시작 시점의 스냅샷으로 사용되며 세션 동안 변경되지 않는다.
"""

import json
import logging
import re
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from config import DEFAULT_JURISDICTION, DEFAULT_LICENSE
from cdl_practice.models.question_model import Endorsement, LicenseClass

logger = logging.getLogger(__name__)

_JURISDICTION_RE = re.compile(r"^[A-Z]{2}$")


class DriverProfile(BaseModel):
    model_config = ConfigDict(frozen=True)

    license: LicenseClass = Field(
        default=LicenseClass(DEFAULT_LICENSE),
        description="면허 등급 (A/B/C/D)"
    )
    endorsements: List[Endorsement] = Field(
        default_factory=list,
        description="보유 추가면허 (중복 없음)"
    )
    jurisdiction: str = Field(
        default=DEFAULT_JURISDICTION,
        description="관할 주 코드 (2자리 대문자)"
    )

    @field_validator('endorsements')
    @classmethod
    def dedupe_endorsements(cls, v: List[Endorsement]) -> List[Endorsement]:
        return list(dict.fromkeys(v))

    @field_validator('jurisdiction')
    @classmethod
    def validate_jurisdiction(cls, v: str) -> str:
        v = v.strip().upper()
        if not _JURISDICTION_RE.match(v):
            raise ValueError(f"관할 주 코드가 올바르지 않습니다: {v!r}")
        return v

    def holds(self, required: Optional[List[Endorsement]]) -> bool:
        """필요 추가면허 중 하나라도 보유하면 True. 요구 사항이 없으면 항상 True."""
        if not required:
            return True
        return any(e in self.endorsements for e in required)

    @classmethod
    def from_raw(
        cls,
        license: Optional[str],
        endorsements_json: Optional[str],
        jurisdiction: Optional[str],
    ) -> "DriverProfile":
        """
        저장소의 원시 문자열 값으로 프로필을 만든다.

        값이 없거나 잘못되면 필드별로 기본값을 쓴다
        (면허 "A", 추가면허 없음, 관할 "TX"). 알 수 없는 추가면허는 버린다.
        """
        try:
            lic = LicenseClass(license) if license else LicenseClass(DEFAULT_LICENSE)
        except ValueError:
            logger.info(f"알 수 없는 면허 등급 {license!r} → 기본값 사용")
            lic = LicenseClass(DEFAULT_LICENSE)

        ends: List[Endorsement] = []
        if endorsements_json:
            try:
                raw = json.loads(endorsements_json)
            except json.JSONDecodeError:
                raw = []
            if isinstance(raw, list):
                for item in raw:
                    try:
                        ends.append(Endorsement(item))
                    except ValueError:
                        continue

        juris = (jurisdiction or "").strip().upper()
        if not _JURISDICTION_RE.match(juris):
            juris = DEFAULT_JURISDICTION

        return cls(license=lic, endorsements=ends, jurisdiction=juris)
