"""Bearer-session dependencies that scope requests to one ledger user."""

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.account import Account
from models.user import User
from services.ledger import AccountLedger
from services.session_token import decode_session_token


auth_scheme = HTTPBearer(auto_error=False)


@dataclass
class AuthContext:
    user_id: str
    email: Optional[str] = None


def ensure_user_scope(auth_user_id: str, supplied_user_id: Optional[str]) -> str:
    """Return the authenticated user_id and reject cross-user attempts."""
    if supplied_user_id and supplied_user_id != auth_user_id:
        raise HTTPException(status_code=403, detail="user_id does not match authenticated session.")
    return auth_user_id


async def get_auth_context(
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
) -> AuthContext:
    if not credentials or credentials.scheme.lower() != "bearer":
        raise HTTPException(status_code=401, detail="Missing Bearer session token.")

    try:
        claims = decode_session_token(credentials.credentials)
    except ValueError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc

    return AuthContext(
        user_id=str(claims.get("sub", "")),
        email=str(claims.get("email", "")) or None,
    )


async def ensure_account(db: AsyncSession, auth: AuthContext) -> Account:
    """Load the caller's account, creating the user and a Free account on first use."""
    result = await db.execute(select(User).where(User.id == auth.user_id))
    if result.scalar_one_or_none() is None:
        db.add(User(id=auth.user_id, email=auth.email or f"{auth.user_id}@local.invalid"))
        try:
            await db.commit()
        except IntegrityError:
            await db.rollback()
    return await AccountLedger(db).open_account(auth.user_id)
