from __future__ import annotations

from dataclasses import dataclass
from typing import Annotated, Any

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer

from sitework.domain.permissions import claim_roles, has_platform_override
from sitework.infra.auth import decode_access_token
from sitework.infra.request_context import set_request_context

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login")


@dataclass(frozen=True)
class CurrentUser:
    user_id: str
    organization_id: str
    roles: frozenset[str]

    @property
    def is_platform_override(self) -> bool:
        return has_platform_override(self.roles)


def get_current_claims(
    request: Request,
    token: str = Depends(oauth2_scheme),
) -> dict[str, Any]:
    try:
        claims = decode_access_token(token)
    except Exception as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"kind": "unauthorized", "message": "Invalid token"},
            headers={"WWW-Authenticate": "Bearer"},
        ) from exc
    request.state.claims = claims
    set_request_context(claims.get("org_id"), claims.get("sub"))
    return claims


def get_current_user(
    claims: Annotated[dict[str, Any], Depends(get_current_claims)],
) -> CurrentUser:
    return CurrentUser(
        user_id=str(claims["sub"]),
        organization_id=str(claims["org_id"]),
        roles=claim_roles(claims),
    )
