from typing import Any, Dict, List, Optional


class APIError(Exception):
    """Base error rendered as {success: false, error, details}"""

    def __init__(
        self,
        message: str,
        status_code: int = 500,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.details = details or {}


class InvalidRequestError(APIError):
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, status_code=400, details=details)


class AuthenticationError(APIError):
    def __init__(self, message: str = "Authentication required"):
        super().__init__(message, status_code=401)


class AuthorizationError(APIError):
    def __init__(self, message: str = "Organization access denied"):
        super().__init__(message, status_code=403)


class NotFoundError(APIError):
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, status_code=404, details=details)


class InvalidStateTransition(APIError):
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, status_code=409, details=details)


class StepInFlight(InvalidStateTransition):
    """A workflow step is being sent right now; cancel is refused until it settles"""


class DuplicateRecordError(APIError):
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, status_code=409, details=details)


# Content errors: permanent, never retried

class ContentError(APIError):
    code = "content_error"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, status_code=422, details=details)


class MissingVariable(ContentError):
    code = "MissingVariable"

    def __init__(self, name: str, missing: Optional[List[str]] = None):
        self.name = name
        self.missing = missing or [name]
        super().__init__(
            f"MissingVariable({name})",
            details={"missing_variables": self.missing}
        )


class TemplateNotFound(ContentError):
    code = "TemplateNotFound"


class MessageTooLong(ContentError):
    code = "MessageTooLong"


class EmptyMessage(ContentError):
    code = "EmptyMessage"


class InvalidPhoneNumber(ContentError):
    code = "InvalidPhoneNumber"


class RecipientOptedOut(ContentError):
    code = "RecipientOptedOut"


# Vendor errors

class ProviderError(APIError):
    """SMS vendor failure. transient=True means a retry (or another provider) may succeed"""

    provider = "unknown"

    def __init__(
        self,
        message: str,
        status_code: int = 502,
        details: Optional[Dict[str, Any]] = None,
        transient: bool = False,
        code: Optional[str] = None
    ):
        super().__init__(message, status_code=status_code, details=details)
        self.transient = transient
        self.code = code


class TwilioAPIError(ProviderError):
    provider = "twilio"


class VonageAPIError(ProviderError):
    provider = "vonage"


class SupabaseAPIError(APIError):
    pass


def is_transient_status(status_code: Optional[int]) -> bool:
    """Vendor HTTP statuses worth retrying"""
    if status_code is None:
        return True
    return status_code == 429 or status_code >= 500


def handle_api_error(exc: APIError, include_details: bool = True) -> Dict[str, Any]:
    """Render an APIError in the dashboard's {success, error, details} shape"""
    body: Dict[str, Any] = {"success": False, "error": exc.message}
    if include_details and exc.details:
        body["details"] = exc.details
    return body
