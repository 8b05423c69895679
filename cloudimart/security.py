import os
import time
from fastapi import Header, HTTPException, Depends
from jose import jwt, JWTError, ExpiredSignatureError

JWT_SECRET = os.getenv("JWT_SECRET")
if not JWT_SECRET:
    raise RuntimeError("JWT_SECRET is not set")
ALGO = "HS256"

# Optional future-proofing
JWT_ISSUER = os.getenv("JWT_ISSUER")
JWT_AUDIENCE = os.getenv("JWT_AUDIENCE")


def require_user(authorization: str = Header(default=None)) -> dict:
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Missing bearer token")

    token = authorization.split(" ", 1)[1].strip()
    if not token:
        raise HTTPException(status_code=401, detail="Missing bearer token")

    try:
        options = {"verify_aud": bool(JWT_AUDIENCE)}
        claims = jwt.decode(
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

    if not str(claims.get("sub") or "").isdigit():
        raise HTTPException(status_code=401, detail="Invalid token subject")
    return claims


def user_id_of(claims: dict) -> int:
    return int(claims["sub"])


def role_of(claims: dict) -> str:
    if claims.get("is_admin"):
        return "admin"
    return str(claims.get("role") or "user")


def require_admin(claims: dict = Depends(require_user)) -> dict:
    if role_of(claims) != "admin":
        raise HTTPException(status_code=403, detail="Forbidden - admin only")
    return claims


def require_delivery(claims: dict = Depends(require_user)) -> dict:
    if role_of(claims) not in ("delivery", "admin"):
        raise HTTPException(status_code=403, detail="Forbidden - delivery staff only")
    return claims


def make_token(user_id: int, role: str = "user", ttl_seconds: int = 3600) -> str:
    """Mint a bearer token. Token issuance belongs to the auth service; this is for local tooling and tests."""
    now = int(time.time())
    payload = {"sub": str(user_id), "role": role, "iat": now, "exp": now + ttl_seconds}
    if JWT_ISSUER:
        payload["iss"] = JWT_ISSUER
    if JWT_AUDIENCE:
        payload["aud"] = JWT_AUDIENCE
    return jwt.encode(payload, JWT_SECRET, algorithm=ALGO)
