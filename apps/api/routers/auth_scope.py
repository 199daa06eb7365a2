"""Bearer-token dependencies resolving the calling account."""

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from services.errors import Unauthorized
from services.session_token import verify_access_token


auth_scheme = HTTPBearer(auto_error=False)


@dataclass
class AuthContext:
    account_id: str
    email: Optional[str] = None


async def get_auth_context(
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
) -> AuthContext:
    """Resolve the account from the identity provider's access token."""
    if not credentials or credentials.scheme.lower() != "bearer":
        raise Unauthorized("Missing Bearer access token.")

    claims = verify_access_token(credentials.credentials)
    return AuthContext(account_id=claims.account_id, email=claims.email)
