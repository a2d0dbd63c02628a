"""
services/store.py

디바이스 단위 영속 키-값 저장소.
엔진은 구체 저장소 API를 직접 다루지 않고 KeyValueStore만 주입받는다.

단일 기록자 불변식: "진행 중 세션" 슬롯(StorageKeys.ACTIVE_SESSION)은
디바이스당 하나뿐이며, 새 시험을 시작하면 덮어쓴다.
"""

import json
import logging
import os
import tempfile
import threading
from typing import Any, Dict, Optional, Protocol

logger = logging.getLogger(__name__)


class StorageKeys:
    """외부 화면(대시보드/프로필/학습)과 공유하는 키. 값 변경 금지."""

    # 운전자 프로필
    USER_LEVEL = "userLevel"
    USER_STATE = "userState"
    USER_ENDORSEMENTS = "userEndorsements"

    # 실전 모의고사
    ACTIVE_SESSION = "haul-active-session"
    EXAM_ID = "haul-exam-id"
    LAST_EXAM_REPORT = "haul-last-exam-report"
    EXAM_HISTORY = "haul-exam-history"

    # 진단 퀵체크
    DIAGNOSTIC_SCORE = "diagnosticScore"
    WEAKEST_DOMAIN = "weakestDomain"
    WEAKEST_SEVERITY = "weakestSeverity"
    DIAGNOSTIC_ANSWERS = "haul_diagnostic_answers"
    DIAGNOSTIC_BREAKDOWN = "haul_diagnostic_breakdown"
    DIAGNOSTIC_META = "haul_diagnostic_meta"
    DIAGNOSTIC_STARTED_AT = "haul_diagnostic_started_at"
    SESSION_ID = "haul_session_id"

    # 학습 진도
    MASTERED_IDS = "mastered-ids"
    DRILL_ANSWERS = "haul-drill-answers"

    # 결제/이용 권한
    ACCESS = "haulOS.access.v1"


class KeyValueStore(Protocol):
    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str) -> None: ...

    def remove(self, key: str) -> None: ...


class MemoryStore:
    """인메모리 저장소. 테스트와 단발성 사용에 쓴다."""

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._data: Dict[str, str] = dict(initial or {})
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            self._data[key] = value

    def remove(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def keys(self):
        with self._lock:
            return list(self._data)


class JsonFileStore:
    """
    JSON 파일 하나에 디바이스의 키-값 전체를 보관하는 저장소.

    모든 set/remove는 즉시 파일에 반영된다(write-through). 임시 파일에 쓴 뒤
    os.replace로 교체하므로 쓰기 도중 중단되어도 이전 내용이 남는다.
    쓰기 실패는 로그만 남기고 흐름을 중단하지 않는다.
    """

    def __init__(self, path: str):
        self.path = path
        self._lock = threading.Lock()
        self._data: Dict[str, str] = self._load()

    def _load(self) -> Dict[str, str]:
        if not os.path.exists(self.path):
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                raw = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"저장소 파일을 읽지 못했습니다 ({self.path}): {e}")
            return {}
        if not isinstance(raw, dict):
            return {}
        return {str(k): v for k, v in raw.items() if isinstance(v, str)}

    def _flush(self) -> None:
        directory = os.path.dirname(self.path) or "."
        tmp_path = None
        try:
            os.makedirs(directory, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=directory, suffix=".tmp")
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(self._data, f, ensure_ascii=False)
            os.replace(tmp_path, self.path)
        except OSError as e:
            logger.error(f"저장소 쓰기 실패 ({self.path}): {e}")
            if tmp_path is not None and os.path.exists(tmp_path):
                try:
                    os.remove(tmp_path)
                except OSError as cleanup_error:
                    logger.warning(f"임시 파일 삭제 실패 ({tmp_path}): {cleanup_error}")

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            self._data[key] = value
            self._flush()

    def remove(self, key: str) -> None:
        with self._lock:
            if self._data.pop(key, None) is not None:
                self._flush()


def load_json(store: KeyValueStore, key: str, fallback: Any) -> Any:
    """저장된 JSON을 읽는다. 없거나 깨져 있으면 fallback."""
    raw = store.get(key)
    if not raw:
        return fallback
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return fallback


def save_json(store: KeyValueStore, key: str, value: Any) -> None:
    store.set(key, json.dumps(value, ensure_ascii=False))
