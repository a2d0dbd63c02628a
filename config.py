import os

# 기본 디렉토리 설정
BASE_DIR = os.path.dirname(os.path.abspath(__file__))

# 경로 설정
DATA_DIR = os.path.join(BASE_DIR, "cdl_practice", "data")
QUESTION_BANK_FILE = os.getenv("CDL_QUESTION_BANK", os.path.join(DATA_DIR, "questions.json"))
STORE_DIR = os.getenv("CDL_STORE_DIR", os.path.join(BASE_DIR, "device_store"))
LOG_FILE = os.getenv("CDL_LOG_FILE", os.path.join(BASE_DIR, "launch.log"))

# 서버 설정
DEFAULT_HOST = os.getenv("HOST", "127.0.0.1")
DEFAULT_PORT = int(os.getenv("PORT", "8000"))
DEVICE_TTL = 3600           # 디바이스 런타임 유휴 만료 (1시간)
CLEANUP_INTERVAL = 300      # 만료 런타임 정리 주기 (5분)

# 운전자 프로필 기본값
DEFAULT_LICENSE = "A"
DEFAULT_JURISDICTION = "TX"

# 실전 모의고사 설정
EXAM_LENGTH = 70            # 문항 수
EXAM_DURATION_SEC = 7200    # 2시간
PASS_THRESHOLD = 80         # 합격 기준 (%)
BOOT_DELAY_MS = 1500        # 신규 세션 부팅 화면
RESUME_BOOT_DELAY_MS = 800  # 이어하기 부팅 화면
SUBMIT_DELAY_MS = 1500      # 제출 처리 화면
TICK_INTERVAL_MS = 1000

# 주제별 드릴 설정
DRILL_DURATION_SEC = 420
DRILL_PACE_SEC = 45         # 문항별 페이스 타이머 (표시용)
DRILL_QUALIFY_ACCURACY = 80
DRILL_QUALIFY_MIN_ATTEMPTS = 10

# 진단 퀵체크 설정
DIAGNOSTIC_LENGTH = 5
DIAGNOSTIC_TIME_LIMIT_SEC = 300
DIAGNOSTIC_ANALYZE_DELAY_MS = 5850
