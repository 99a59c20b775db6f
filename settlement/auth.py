from fastapi import Depends, Header, HTTPException
from jose import JWTError, jwt

from settlement import config


def verify_token(authorization: str = Header(...)) -> dict:
    try:
        scheme, token = authorization.split()
        if scheme.lower() != "bearer":
            raise ValueError("Unsupported auth scheme")
        secret = config.provider_secret("JWT_SECRET")
        if not secret:
            raise ValueError("JWT_SECRET is not configured")
        return jwt.decode(token, secret, algorithms=["HS256"])
    except (ValueError, JWTError):
        raise HTTPException(status_code=401, detail="Invalid or missing token")


def require_admin(claims: dict = Depends(verify_token)) -> dict:
    if claims.get("role") != "admin":
        raise HTTPException(status_code=403, detail="Admin role required")
    return claims
