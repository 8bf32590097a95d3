"""Bearer session dependencies scoping ledger requests to one account."""

from dataclasses import dataclass
from typing import Optional, Tuple

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from services.session_token import ADMIN_SCOPE, decode_session_token


auth_scheme = HTTPBearer(auto_error=False)


@dataclass
class AuthContext:
    user_id: str
    email: Optional[str] = None
    scopes: Tuple[str, ...] = ()

    @property
    def is_admin(self) -> bool:
        return ADMIN_SCOPE in self.scopes


async def get_auth_context(
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
) -> AuthContext:
    """Resolve the account owner from the Bearer session token."""
    if not credentials or credentials.scheme.lower() != "bearer":
        raise HTTPException(status_code=401, detail="Missing Bearer session token.")

    try:
        payload = decode_session_token(credentials.credentials)
    except ValueError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc

    return AuthContext(
        user_id=str(payload["sub"]),
        email=str(payload.get("email", "")) or None,
        scopes=tuple(payload.get("scopes", [])),
    )


async def require_admin_scope(auth: AuthContext = Depends(get_auth_context)) -> AuthContext:
    """Allow only operator tokens minted with the admin scope."""
    if not auth.is_admin:
        raise HTTPException(status_code=403, detail="Admin scope required.")
    return auth
