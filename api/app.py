"""
api/app.py: FastAPI 앱 인스턴스 + 디바이스 쿠키 미들웨어 + 만료 런타임 정리
"""

import logging
import random
import threading
import time
from typing import Callable, Optional

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware

from config import CLEANUP_INTERVAL, DEVICE_TTL
from api.routes import router
from api.session import DeviceRegistry
from cdl_practice.services.question_bank import QuestionBank
from cdl_practice.services.scheduler import Scheduler, ThreadingScheduler

DEVICE_COOKIE = "cdl_device"

logger = logging.getLogger(__name__)


def create_app(
    bank: Optional[QuestionBank] = None,
    registry: Optional[DeviceRegistry] = None,
    scheduler: Optional[Scheduler] = None,
    clock: Callable[[], float] = time.time,
    rng: Optional[random.Random] = None,
    cleanup: bool = True,
) -> FastAPI:
    app = FastAPI(title="CDL Exam Simulator", docs_url=None, redoc_url=None)

    app.state.bank = bank or QuestionBank.from_file()
    app.state.registry = registry or DeviceRegistry()
    app.state.scheduler = scheduler or ThreadingScheduler()
    app.state.clock = clock
    app.state.rng = rng or random.Random()

    # CORS (모바일 브라우저 등 다양한 출처 허용)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # 디바이스 미들웨어: 쿠키에서 디바이스 id를 읽고, 없으면 새로 발급
    @app.middleware("http")
    async def device_middleware(request: Request, call_next):
        device_id = request.cookies.get(DEVICE_COOKIE)
        if not DeviceRegistry.is_valid_id(device_id):
            device_id = DeviceRegistry.new_device_id()

        request.state.device_id = device_id
        response: Response = await call_next(request)
        response.set_cookie(
            key=DEVICE_COOKIE,
            value=device_id,
            httponly=True,
            samesite="lax",
            max_age=365 * 24 * 3600,
        )
        return response

    app.include_router(router)

    @app.get("/")
    async def health():
        return {"ok": True, "questions": len(app.state.bank)}

    # 만료 런타임 주기적 정리 (5분마다)
    if cleanup:
        def _cleanup_loop():
            while True:
                time.sleep(CLEANUP_INTERVAL)
                removed = app.state.registry.cleanup_expired()
                if removed:
                    logger.info(f"유휴 런타임 {removed}개 정리 (TTL {DEVICE_TTL}초)")

        t = threading.Thread(target=_cleanup_loop, daemon=True)
        t.start()

    return app
