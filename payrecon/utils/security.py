"""Access guards for the operator-facing surfaces.

Webhook endpoints authenticate by signature, not here. The verification API
takes the operator bearer token and the API docs take HTTP Basic credentials.
"""

from __future__ import annotations

import logging
import secrets

from fastapi import Depends, HTTPException, Request, Security, status
from fastapi.security import (
    HTTPAuthorizationCredentials,
    HTTPBasic,
    HTTPBasicCredentials,
    HTTPBearer,
)

from payrecon.config import settings

logger = logging.getLogger(__name__)

_docs_scheme = HTTPBasic(realm="payrecon docs")
_operator_scheme = HTTPBearer(
    auto_error=False,
    scheme_name="OperatorToken",
    description="Operator token for payment status verification",
)


def _matches(supplied: str, configured: str) -> bool:
    # An unset secret locks the surface instead of accepting empty credentials.
    if not supplied or not configured:
        return False
    return secrets.compare_digest(supplied.encode(), configured.encode())


def _reject(request: Request, scheme: str) -> HTTPException:
    logger.info("access denied", extra={"endpoint": request.url.path})
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Unauthorized",
        headers={"WWW-Authenticate": scheme},
    )


def require_docs_credentials(
    request: Request, credentials: HTTPBasicCredentials = Depends(_docs_scheme)
) -> None:
    username_ok = _matches(credentials.username, settings.api_basic_username)
    password_ok = _matches(credentials.password, settings.api_basic_password)
    if not (username_ok and password_ok):
        raise _reject(request, "Basic")


def require_operator_token(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Security(_operator_scheme),
) -> None:
    """Gate the verification routes on the configured operator token."""

    token = credentials.credentials.strip() if credentials else ""
    if not _matches(token, settings.api_bearer_token):
        raise _reject(request, "Bearer")
