"""
api/session.py: 디바이스별 런타임 레지스트리 (쿠키 기반)

각 브라우저에 디바이스 id를 발급하고, 디바이스별로 영속 저장소와
진행 중인 엔진(실전/드릴/진단)을 유지한다.
TTL(기본 1시간) 동안 접근이 없으면 엔진을 닫고 런타임을 버린다.
엔진을 닫아도 저장된 실전 세션 스냅샷은 남으므로 다음 접속 때 이어하기가 된다.
"""

import logging
import os
import re
import threading
import time
import uuid
from typing import Dict, Optional

from config import DEVICE_TTL, STORE_DIR
from cdl_practice.services.diagnostic_engine import DiagnosticEngine
from cdl_practice.services.drill_engine import DrillSessionEngine
from cdl_practice.services.exam_engine import ExamSessionEngine
from cdl_practice.services.store import JsonFileStore, KeyValueStore

logger = logging.getLogger(__name__)

_DEVICE_ID_RE = re.compile(r"^[0-9a-f]{32}$")


class DeviceRuntime:
    def __init__(self, device_id: str, store: KeyValueStore):
        self.device_id = device_id
        self.store = store
        self.exam: Optional[ExamSessionEngine] = None
        self.drill: Optional[DrillSessionEngine] = None
        self.diagnostic: Optional[DiagnosticEngine] = None
        self.touched = time.time()

    def replace_exam(self, engine: Optional[ExamSessionEngine]) -> None:
        if self.exam is not None:
            self.exam.close()
        self.exam = engine

    def replace_drill(self, engine: Optional[DrillSessionEngine]) -> None:
        if self.drill is not None:
            self.drill.close()
        self.drill = engine

    def replace_diagnostic(self, engine: Optional[DiagnosticEngine]) -> None:
        if self.diagnostic is not None:
            self.diagnostic.close()
        self.diagnostic = engine

    def close(self) -> None:
        self.replace_exam(None)
        self.replace_drill(None)
        self.replace_diagnostic(None)


class DeviceRegistry:
    def __init__(self, store_dir: Optional[str] = STORE_DIR, ttl: int = DEVICE_TTL, store_factory=None):
        self.store_dir = store_dir
        self.ttl = ttl
        self._store_factory = store_factory or self._file_store
        self._lock = threading.Lock()
        self._runtimes: Dict[str, DeviceRuntime] = {}

    def _file_store(self, device_id: str) -> KeyValueStore:
        return JsonFileStore(os.path.join(self.store_dir, f"{device_id}.json"))

    @staticmethod
    def new_device_id() -> str:
        return uuid.uuid4().hex

    @staticmethod
    def is_valid_id(device_id: Optional[str]) -> bool:
        return bool(device_id) and bool(_DEVICE_ID_RE.match(device_id))

    def get(self, device_id: str) -> DeviceRuntime:
        """디바이스 런타임을 가져온다. 없으면 저장소를 열어 새로 만든다."""
        with self._lock:
            runtime = self._runtimes.get(device_id)
            if runtime is None:
                runtime = DeviceRuntime(device_id, self._store_factory(device_id))
                self._runtimes[device_id] = runtime
            runtime.touched = time.time()  # 접근 시 갱신
            return runtime

    def reset(self, device_id: str) -> None:
        """런타임 초기화 (저장소 내용은 유지)."""
        with self._lock:
            runtime = self._runtimes.pop(device_id, None)
        if runtime is not None:
            runtime.close()

    def cleanup_expired(self) -> int:
        """만료된 런타임을 정리. 제거된 수 반환."""
        now = time.time()
        with self._lock:
            expired = [did for did, rt in self._runtimes.items() if now - rt.touched > self.ttl]
            runtimes = [self._runtimes.pop(did) for did in expired]
        for runtime in runtimes:
            runtime.close()
        return len(runtimes)

    def close_all(self) -> None:
        with self._lock:
            runtimes = list(self._runtimes.values())
            self._runtimes.clear()
        for runtime in runtimes:
            runtime.close()
