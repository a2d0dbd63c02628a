"""
services/profile_service.py

운전자 프로필 저장소 입출력. 키는 첫 화면 설정과 공유한다.
"""

import json

from cdl_practice.models.profile_model import DriverProfile
from cdl_practice.services.store import KeyValueStore, StorageKeys


def load_profile(store: KeyValueStore) -> DriverProfile:
    return DriverProfile.from_raw(
        store.get(StorageKeys.USER_LEVEL),
        store.get(StorageKeys.USER_ENDORSEMENTS),
        store.get(StorageKeys.USER_STATE),
    )


def save_profile(store: KeyValueStore, profile: DriverProfile) -> None:
    store.set(StorageKeys.USER_LEVEL, profile.license.value)
    store.set(StorageKeys.USER_ENDORSEMENTS, json.dumps([e.value for e in profile.endorsements]))
    store.set(StorageKeys.USER_STATE, profile.jurisdiction)
