"""
FastAPI dependencies for caller resolution.

Three kinds of caller:
  1. Account holders — X-Account-Id is set by the upstream auth layer and
     trusted as-is. Searches are metered against that account.
  2. Anonymous callers — no X-Account-Id. Accepted only when
     PUBLIC_MODE_ENABLED=true and identified by network address
     (X-Forwarded-For first hop, then X-Real-IP, then the socket peer).
  3. Collaborators — the payment webhook (X-Payment-Secret) and operators
     (X-Admin-Token). Secrets are compared in constant time and never logged.

Security:
  • Generic 401 for every failure mode of a given check.
  • An unset secret disables the corresponding routes entirely.
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass

from fastapi import Header, HTTPException, Request, status

from lookup_meter.core.config import settings
from lookup_meter.services.ledger import validate_account_id

logger = logging.getLogger(__name__)

_ACCOUNT_REQUIRED = HTTPException(
    status_code=status.HTTP_401_UNAUTHORIZED,
    detail="Sign in to search.",
)

_ADMIN_FAILED = HTTPException(
    status_code=status.HTTP_401_UNAUTHORIZED,
    detail="Invalid or missing admin token.",
)

_PAYMENT_FAILED = HTTPException(
    status_code=status.HTTP_401_UNAUTHORIZED,
    detail="Invalid or missing payment secret.",
)


@dataclass(frozen=True, slots=True)
class CallerContext:
    """Who is calling.

    Attributes:
        account_id: Trusted account id, or None for an anonymous caller.
        identity:   Network identity, used for anonymous rate limiting.
    """

    account_id: str | None
    identity: str

    @property
    def is_anonymous(self) -> bool:
        return self.account_id is None


def client_identity(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first_hop = forwarded.split(",")[0].strip()
        if first_hop:
            return first_hop
    real_ip = request.headers.get("x-real-ip")
    if real_ip and real_ip.strip():
        return real_ip.strip()
    if request.client is not None and request.client.host:
        return request.client.host
    return "unknown"


def _bad_account(account_id: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_400_BAD_REQUEST,
        detail=f"Malformed X-Account-Id header: {account_id!r}",
    )


async def get_caller(
    request: Request,
    x_account_id: str | None = Header(default=None, alias="X-Account-Id"),
) -> CallerContext:
    """
    Resolve the caller for metered routes.

    Raises 401 for anonymous callers while public mode is off.
    """
    identity = client_identity(request)
    if x_account_id is None or not x_account_id.strip():
        if not settings.PUBLIC_MODE_ENABLED:
            raise _ACCOUNT_REQUIRED
        return CallerContext(account_id=None, identity=identity)

    account_id = x_account_id.strip()
    try:
        validate_account_id(account_id)
    except ValueError as exc:
        raise _bad_account(account_id) from exc
    return CallerContext(account_id=account_id, identity=identity)


async def get_account_caller(
    request: Request,
    x_account_id: str | None = Header(default=None, alias="X-Account-Id"),
) -> CallerContext:
    """Like get_caller, but credit routes always need an account."""
    if x_account_id is None or not x_account_id.strip():
        raise _ACCOUNT_REQUIRED
    return await get_caller(request, x_account_id)


def _secret_matches(supplied: str | None, expected: str) -> bool:
    if not expected or not supplied:
        return False
    return secrets.compare_digest(supplied.encode("utf-8"), expected.encode("utf-8"))


async def require_admin(
    request: Request,
    x_admin_token: str | None = Header(default=None, alias="X-Admin-Token"),
) -> str:
    """Gate for /admin routes. Returns the caller identity for audit logs."""
    if not _secret_matches(x_admin_token, settings.ADMIN_API_TOKEN):
        logger.warning("Rejected admin request from %s", client_identity(request))
        raise _ADMIN_FAILED
    return client_identity(request)


async def require_payment_secret(
    request: Request,
    x_payment_secret: str | None = Header(default=None, alias="X-Payment-Secret"),
) -> None:
    """Gate for the payment collaborator's top-up callback."""
    if not _secret_matches(x_payment_secret, settings.PAYMENT_WEBHOOK_SECRET):
        logger.warning("Rejected top-up from %s", client_identity(request))
        raise _PAYMENT_FAILED
