"""
services/access.py

이용 권한 조회. 실제 판정은 외부 결제(구독) 시스템이 하고,
여기서는 그 결과(none / subscription / lifetime)를 읽기만 한다.
"""

from enum import Enum
from typing import Protocol

from cdl_practice.models.profile_model import DriverProfile
from cdl_practice.services.store import KeyValueStore, StorageKeys


class AccessLevel(str, Enum):
    NONE = "none"
    SUBSCRIPTION = "subscription"
    LIFETIME = "lifetime"

    @property
    def entitled(self) -> bool:
        return self is not AccessLevel.NONE


class AccessChecker(Protocol):
    def access_level(self, profile: DriverProfile) -> AccessLevel: ...


def parse_access_level(raw) -> AccessLevel:
    try:
        return AccessLevel(raw)
    except ValueError:
        return AccessLevel.NONE


def save_access_level(store: KeyValueStore, level: AccessLevel) -> None:
    store.set(StorageKeys.ACCESS, AccessLevel(level).value)


class StoreAccessChecker:
    """결제 확인 후 클라이언트 저장소에 기록된 권한 값을 읽는다."""

    def __init__(self, store: KeyValueStore):
        self.store = store

    def access_level(self, profile: DriverProfile) -> AccessLevel:
        return parse_access_level(self.store.get(StorageKeys.ACCESS))


class StaticAccessChecker:
    def __init__(self, level: AccessLevel):
        self.level = level

    def access_level(self, profile: DriverProfile) -> AccessLevel:
        return self.level
