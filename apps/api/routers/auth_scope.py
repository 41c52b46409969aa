"""Resolve which user's balance a request may act on."""

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, HTTPException, Query
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from services.session_token import decode_session_token


bearer_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class AuthContext:
    user_id: str
    email: Optional[str] = None
    expires_at: Optional[int] = None

    def scope(self, requested_user_id: Optional[str]) -> str:
        """Return the session's user; naming any other user is forbidden."""
        if requested_user_id and requested_user_id != self.user_id:
            raise HTTPException(status_code=403, detail="user_id does not match authenticated session.")
        return self.user_id


async def get_auth_context(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> AuthContext:
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise HTTPException(status_code=401, detail="Missing Bearer session token.")

    try:
        claims = decode_session_token(credentials.credentials)
    except ValueError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc

    return AuthContext(
        user_id=str(claims["sub"]).strip(),
        email=str(claims.get("email") or "") or None,
        expires_at=claims.get("exp"),
    )


async def get_scoped_user_id(
    user_id: Optional[str] = Query(default=None),
    auth: AuthContext = Depends(get_auth_context),
) -> str:
    return auth.scope(user_id)
