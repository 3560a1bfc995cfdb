import os
from dataclasses import dataclass

from fastapi import Header, HTTPException, Depends
from jose import jwt, JWTError, ExpiredSignatureError

JWT_SECRET = os.getenv("JWT_SECRET")
if not JWT_SECRET:
    raise RuntimeError("JWT_SECRET is not set")
ALGO = "HS256"

# Optional future-proofing
JWT_ISSUER = os.getenv("JWT_ISSUER")
JWT_AUDIENCE = os.getenv("JWT_AUDIENCE")

ROLES = ("GENERAL", "ADMIN", "EMPLOYEE")


@dataclass(frozen=True)
class Principal:
    id: int
    role: str = "GENERAL"
    raw_token: str = ""

    @property
    def is_admin(self) -> bool:
        return self.role == "ADMIN"

    def owns(self, user_id: int) -> bool:
        return self.id == user_id

    def can_access(self, user_id: int) -> bool:
        return self.owns(user_id) or self.is_admin


def principal_from_claims(claims: dict) -> Principal:
    try:
        user_id = int(claims["sub"])
    except (KeyError, TypeError, ValueError):
        raise HTTPException(status_code=401, detail="Invalid token subject")

    role = str(claims.get("role") or "GENERAL").upper()
    if role not in ROLES:
        raise HTTPException(status_code=401, detail="Invalid token role")

    return Principal(id=user_id, role=role, raw_token=claims.get("raw_token", ""))


def decode_token(token: str) -> dict:
    try:
        options = {"verify_aud": bool(JWT_AUDIENCE)}
        return jwt.decode(
            token,
            JWT_SECRET,
            algorithms=[ALGO],
            audience=JWT_AUDIENCE,
            issuer=JWT_ISSUER,
            options=options,
        )
    except ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid token")


def require_user(authorization: str = Header(default=None)) -> Principal:
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Missing bearer token")

    token = authorization.split(" ", 1)[1].strip()
    if not token:
        raise HTTPException(status_code=401, detail="Missing bearer token")

    claims = decode_token(token)
    # Attach raw token so downstream calls can forward it
    claims["raw_token"] = token
    return principal_from_claims(claims)


def require_admin(principal: Principal = Depends(require_user)) -> Principal:
    # Role comes from the verified token on every request, never from a cache
    if not principal.is_admin:
        raise HTTPException(status_code=403, detail="Admin only")
    return principal
