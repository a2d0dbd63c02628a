"""
services/scheduler.py

타이머 콜백 스케줄러.
엔진이 스케줄러를 소유하고 단계 전환 시 직접 취소하므로,
논리적 종료 이후에 상태를 바꾸는 콜백이 남지 않는다.
"""

import logging
import threading
from typing import Callable, Protocol

logger = logging.getLogger(__name__)


class CancelHandle(Protocol):
    def cancel(self) -> None: ...


class Scheduler(Protocol):
    def schedule_repeating(self, interval_ms: int, callback: Callable[[], None]) -> CancelHandle: ...

    def schedule_once(self, delay_ms: int, callback: Callable[[], None]) -> CancelHandle: ...


class _RepeatingTimer:
    def __init__(self, interval_ms: int, callback: Callable[[], None]):
        self._interval = interval_ms / 1000
        self._callback = callback
        self._stopped = threading.Event()
        self._thread = threading.Thread(target=self._run, daemon=True)
        self._thread.start()

    def _run(self) -> None:
        # Event.wait가 True를 반환하면 취소된 것
        while not self._stopped.wait(self._interval):
            try:
                self._callback()
            except Exception:
                logger.exception("반복 타이머 콜백 오류")

    def cancel(self) -> None:
        self._stopped.set()


class _OnceTimer:
    def __init__(self, delay_ms: int, callback: Callable[[], None]):
        self._timer = threading.Timer(delay_ms / 1000, self._fire, args=(callback,))
        self._timer.daemon = True
        self._timer.start()

    @staticmethod
    def _fire(callback: Callable[[], None]) -> None:
        try:
            callback()
        except Exception:
            logger.exception("지연 타이머 콜백 오류")

    def cancel(self) -> None:
        self._timer.cancel()


class ThreadingScheduler:
    """threading 기반 운영용 스케줄러. 콜백은 별도 스레드에서 실행된다."""

    def schedule_repeating(self, interval_ms: int, callback: Callable[[], None]) -> CancelHandle:
        return _RepeatingTimer(interval_ms, callback)

    def schedule_once(self, delay_ms: int, callback: Callable[[], None]) -> CancelHandle:
        return _OnceTimer(delay_ms, callback)
