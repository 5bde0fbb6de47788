"""Error taxonomy shared by the backend and the HTTP layer.

Every error carries a status code and a client-safe message. Anything more
specific (paths, hostnames, OS error text) belongs in the server log only.
"""
from __future__ import annotations


class ArpackError(Exception):
    status_code = 500
    public_message = "Internal server error"

    def __init__(self, detail: str = "", *, public_message: str | None = None) -> None:
        super().__init__(detail or self.public_message)
        self.detail = detail or self.public_message
        if public_message is not None:
            self.public_message = public_message


# ============ Input validation ============

class InputValidationError(ArpackError, ValueError):
    status_code = 400
    public_message = "Invalid request"


class InvalidSessionId(InputValidationError):
    public_message = "Invalid session ID"


class InvalidUrl(InputValidationError):
    public_message = "Invalid URL format. Only HTTPS URLs are allowed."


class InvalidImage(InputValidationError):
    public_message = "Invalid image file"


class PayloadTooLarge(InputValidationError):
    status_code = 413
    public_message = "File too large"


# ============ Security policy ============

class SecurityPolicyViolation(InputValidationError):
    """Same response semantics as InputValidationError, logged for audit."""


class PathTraversalError(SecurityPolicyViolation):
    public_message = "Invalid path"


class DomainNotAllowed(SecurityPolicyViolation):
    status_code = 403
    public_message = "Domain not allowed"


class BlockedAddress(SecurityPolicyViolation):
    status_code = 403
    public_message = "Domain not allowed"


# ============ Upstream ============

class UpstreamFailure(ArpackError):
    status_code = 502
    public_message = "Failed to fetch image"

    def __init__(self, detail: str = "", *, status_code: int | None = None) -> None:
        super().__init__(detail)
        if status_code is not None:
            self.status_code = status_code


class UpstreamTimeout(UpstreamFailure):
    status_code = 408
    public_message = "Request timeout"


# ============ Storage ============

class StorageFailure(ArpackError):
    status_code = 500
    public_message = "Internal server error"
