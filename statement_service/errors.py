from typing import Any, Dict, Optional


class StatementError(Exception):
    """Base error for anything that stops a statement from being processed.

    Carries the HTTP status the endpoints answer with and whether the client
    should prompt for a password before trying again.
    """

    status_code = 500
    needs_password = False

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": self.message}
        if self.needs_password:
            payload["needsPassword"] = True
        return payload


class NoFileError(StatementError):
    status_code = 400


class UnsupportedFileError(StatementError):
    status_code = 400


class FileTooLargeError(StatementError):
    status_code = 413


class UnauthorizedError(StatementError):
    status_code = 401


class PasswordRequiredError(StatementError):
    status_code = 400
    needs_password = True


class IncorrectPasswordError(StatementError):
    status_code = 400
    needs_password = True


class DecryptionToolError(StatementError):
    status_code = 500


class TextExtractionError(StatementError):
    status_code = 400


class ImageBasedPdfError(TextExtractionError):
    pass


class AIExtractionError(StatementError):
    """Raised by the pipeline when the model call did not yield transactions.

    ``transient`` is set when the last failure was an overload/rate-limit
    signal, which maps to 503 so callers may retry the whole file.
    """

    def __init__(self, message: str, transient: bool = False, raw_response: Optional[str] = None) -> None:
        super().__init__(message, status_code=503 if transient else 500)
        self.transient = transient
        self.raw_response = raw_response


class EndpointError(Exception):
    """Non-success answer from the upload or count endpoint, as seen by the orchestrator."""

    def __init__(
        self,
        status_code: int,
        message: str,
        needs_password: bool = False,
        retryable: Optional[bool] = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.message = message
        self.needs_password = needs_password
        # 503 is the service's "try again" signal; 0 means the request never got an answer.
        self.retryable = status_code == 503 if retryable is None else retryable
