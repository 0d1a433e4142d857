"""
Error taxonomy for the auth + redeem endpoints.

    PageGateError (base)
    ├── ConfigurationError      500  missing env, names listed
    ├── ClientProtocolError     400  bad/missing OAuth state, query params, body fields
    ├── AuthenticationError     401  absent/tampered/expired credential (uniform)
    ├── ForbiddenError          403
    ├── NotFoundError           404
    ├── InvalidCodeError        400  one bucket for every unusable redeem code
    ├── AlreadyRedeemedError    409
    └── UpstreamError
        ├── ProviderError       401  identity provider
        └── StoreError          500  data store
            └── MigrationError       schema migrations

Every error renders as a JSON body with an `error` key; upstream text goes into
`detail` for operators and never includes a traceback.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

INVALID_CODE_MESSAGE = "Invalid or unavailable code"


class PageGateError(Exception):
    status_code = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.message}
        body.update(self.details)
        return body


class ConfigurationError(PageGateError):
    status_code = 500

    def __init__(self, missing: List[str]):
        self.missing = list(missing)
        super().__init__("Missing env", {"missing": self.missing})


class ClientProtocolError(PageGateError):
    status_code = 400


class AuthenticationError(PageGateError):
    status_code = 401

    def __init__(self) -> None:
        super().__init__("Unauthorized", {"authenticated": False})


class ForbiddenError(PageGateError):
    status_code = 403


class NotFoundError(PageGateError):
    status_code = 404


class InvalidCodeError(PageGateError):
    """Not found, inactive, used, expired and lost-race codes all look the same."""

    status_code = 400

    def __init__(self) -> None:
        super().__init__(INVALID_CODE_MESSAGE)


class AlreadyRedeemedError(PageGateError):
    status_code = 409

    def __init__(self, page_id: Optional[str], *, ready: bool = True):
        self.page_id = page_id
        if ready:
            super().__init__("Account already has a page", {"state": "ready"})
        else:
            super().__init__("Account already redeemed a code")


class UpstreamError(PageGateError):
    def __init__(self, message: str, detail: Any = None):
        super().__init__(message, {"detail": detail} if detail is not None else None)


class ProviderError(UpstreamError):
    status_code = 401


class StoreError(UpstreamError):
    status_code = 500


class MigrationError(StoreError):
    """A bundled migration is malformed or no longer matches what the database recorded."""
