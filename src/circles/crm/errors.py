"""CRM error taxonomy.

The sync engine decides retry behavior from the exception class alone:

- ValidationError: retrying cannot help; the queue item is failed at once.
  A 409 on create is the one case push_contact resolves itself.
- NetworkError (and AuthError): transient; the item goes back to pending.
- AuthExpiredError: never escapes an adapter call that has a refresh
  credential; the adapter refreshes once and retries once.
- RemoteNotFoundError: the remote record is gone; pushes fall back to
  find-or-create and pulls skip the contact.
"""

from __future__ import annotations

import httpx


class CRMError(Exception):
    """Base class for CRM adapter failures."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ValidationError(CRMError):
    """Input cannot be pushed as-is (missing required field, malformed payload,
    or rejected by the provider)."""


class NetworkError(CRMError):
    """Transient transport or server failure."""


class AuthExpiredError(CRMError):
    """The access credential is expired or revoked."""


class AuthError(NetworkError):
    """Credential refresh failed or the refreshed credential was rejected."""


class RemoteNotFoundError(CRMError):
    """The remote record does not exist (deleted or archived)."""


def classify_http_error(response: httpx.Response) -> CRMError:
    """Map a non-2xx provider response to the error taxonomy."""
    status = response.status_code
    detail = _error_detail(response)
    message = f"{response.request.method} {response.request.url.path} -> {status}: {detail}"

    if status == 401:
        return AuthExpiredError(message, status_code=status)
    if status == 404:
        return RemoteNotFoundError(message, status_code=status)
    if status == 429 or status >= 500:
        return NetworkError(message, status_code=status)
    return ValidationError(message, status_code=status)


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(body, dict):
        for key in ("message", "error_description", "error"):
            if body.get(key):
                return str(body[key])
    if isinstance(body, list) and body and isinstance(body[0], dict):
        # Salesforce returns a list of {message, errorCode}
        return str(body[0].get("message", body[0]))
    return str(body)[:200]
