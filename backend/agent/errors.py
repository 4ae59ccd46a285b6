from __future__ import annotations


class ChronosError(Exception):
    pass


class AuthRejectedError(ChronosError):
    pass


class AuthExpiredError(AuthRejectedError):
    pass


class ToolValidationError(ChronosError):
    def __init__(self, tool_name: str, code: str):
        self.tool_name = tool_name
        self.code = code
        super().__init__(f"{tool_name}:{code}")


class GatewayError(ChronosError):
    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class LoopExhaustedError(ChronosError):
    def __init__(self, rounds: int):
        self.rounds = rounds
        super().__init__(f"could_not_complete:round_limit={rounds}")


class IdempotencyConflictError(ChronosError):
    def __init__(self, key: str):
        self.key = key
        super().__init__(f"retry_later:{key}")


class LLMError(ChronosError):
    pass


class StorageError(ChronosError):
    pass
