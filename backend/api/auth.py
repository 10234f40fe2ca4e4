import hmac
import os
from typing import Optional

from fastapi import Header, HTTPException, Request, status

ORCHESTRATOR_API_KEY_ENV = "ORCHESTRATOR_API_KEY"
ORCHESTRATOR_API_KEY_HEADER = "X-Orchestrator-API-Key"
ORCHESTRATOR_API_KEY_ALLOW_INSECURE_LOCAL_ENV = "ORCHESTRATOR_API_KEY_ALLOW_INSECURE_LOCAL"
_TRUTHY_ENV_VALUES = {"1", "true", "yes", "on"}
_LOOPBACK_CLIENT_HOSTS = {"127.0.0.1", "::1", "localhost"}


def get_configured_api_key() -> str:
    return str(os.getenv(ORCHESTRATOR_API_KEY_ENV) or "").strip()


def allow_insecure_local_without_api_key() -> bool:
    value = str(os.getenv(ORCHESTRATOR_API_KEY_ALLOW_INSECURE_LOCAL_ENV) or "").strip().lower()
    return value in _TRUTHY_ENV_VALUES


def is_loopback_host(host: Optional[str]) -> bool:
    return str(host or "").strip().lower() in _LOOPBACK_CLIENT_HOSTS


def extract_bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization or not isinstance(authorization, str):
        return None
    value = authorization.strip()
    if not value:
        return None
    scheme, _, token = value.partition(" ")
    if scheme.lower() != "bearer":
        return None
    token = token.strip()
    return token if token else None


def check_api_key(
    *, client_host: Optional[str], header_key: Optional[str], authorization: Optional[str]
) -> Optional[str]:
    """Return None when the caller is allowed, otherwise the rejection reason."""
    configured = get_configured_api_key()
    if not configured:
        if allow_insecure_local_without_api_key() and is_loopback_host(client_host):
            return None
        if allow_insecure_local_without_api_key():
            return "insecure_local_override_requires_loopback"
        return "api_key_not_configured"

    provided = str(header_key or "").strip() or extract_bearer_token(authorization)
    if not provided or not hmac.compare_digest(provided, configured):
        return "invalid_or_missing_api_key"
    return None


async def require_orchestrator_api_key(
    request: Request,
    x_orchestrator_api_key: Optional[str] = Header(
        default=None, alias=ORCHESTRATOR_API_KEY_HEADER
    ),
    authorization: Optional[str] = Header(default=None, alias="Authorization"),
) -> None:
    client = getattr(request, "client", None)
    reason = check_api_key(
        client_host=getattr(client, "host", None),
        header_key=x_orchestrator_api_key,
        authorization=authorization,
    )
    if reason is None:
        return
    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={
            "error": "orchestrator_auth_failed",
            "reason": reason,
        },
        headers={"WWW-Authenticate": "Bearer"},
    )
