"""
services/errors.py

엔진 도메인 예외. HTTP 계층(api/routes.py)에서 상태 코드로 변환한다.
손상된 스냅샷, 빈 문항 풀, 중복 제출 같은 회복 가능한 이상 상황은
예외가 아니라 조용히 처리된다.
"""


class ExamStateError(RuntimeError):
    """현재 단계에서 허용되지 않는 조작."""

    def __init__(self, operation: str, stage: str):
        super().__init__(f"'{operation}'은(는) '{stage}' 단계에서 허용되지 않습니다.")
        self.operation = operation
        self.stage = stage


class InvalidPositionError(ValueError):
    pass


class InvalidOptionError(ValueError):
    pass


class AccessDeniedError(RuntimeError):
    pass
