from __future__ import annotations

TIMEOUT_MESSAGE = "Request timed out. Please try again with a shorter question."
UNREACHABLE_MESSAGE = "Cannot connect to Ollama. Please ensure Ollama is running."
GENERIC_GENERATION_MESSAGE = "I couldn't generate an answer from your emails right now. Please try again."
RECONNECT_MESSAGE = "Gmail/Google Drive authorization expired. Please reconnect your account from Sources."
EMBEDDINGS_DEGRADED_WARNING = (
    "Embeddings unavailable (Ollama not reachable). Stored emails/content without embeddings; "
    "keyword search will still work."
)
PARTIAL_EMBEDDINGS_WARNING = "Some chunks were stored without embeddings; keyword search will still work."


class RagCoreError(Exception):
    default_code = "RAG_CORE_ERROR"

    def __init__(self, error_code: str | None = None, message: str = "") -> None:
        super().__init__(message or error_code or self.default_code)
        self.error_code = error_code or self.default_code
        self.message = message


class BackendUnreachableError(RagCoreError):
    default_code = "BACKEND_UNREACHABLE"


class GenerationTimeoutError(RagCoreError):
    default_code = "GENERATION_TIMEOUT"


class MalformedResponseError(RagCoreError):
    default_code = "MALFORMED_RESPONSE"


class ModelNotFoundError(RagCoreError):
    default_code = "MODEL_NOT_FOUND"


class TokenInvalidError(RagCoreError):
    default_code = "TOKEN_INVALID"


class ProviderApiError(RagCoreError):
    default_code = "PROVIDER_API_ERROR"

    def __init__(
        self,
        error_code: str | None = None,
        message: str = "",
        *,
        status_code: int | None = None,
        retryable: bool = False,
    ) -> None:
        super().__init__(error_code, message)
        self.status_code = status_code
        self.retryable = retryable


class ValidationError(RagCoreError):
    default_code = "VALIDATION_ERROR"


class ConfigurationError(RagCoreError):
    default_code = "CONFIGURATION_ERROR"


class UnknownSourceTypeError(RagCoreError):
    default_code = "UNKNOWN_SOURCE_TYPE"


_USER_MESSAGES = {
    GenerationTimeoutError.default_code: TIMEOUT_MESSAGE,
    BackendUnreachableError.default_code: UNREACHABLE_MESSAGE,
    TokenInvalidError.default_code: RECONNECT_MESSAGE,
}


def user_message_for(exc: BaseException) -> str:
    code = getattr(exc, "error_code", None)
    return _USER_MESSAGES.get(str(code), GENERIC_GENERATION_MESSAGE)
