from fastapi import Depends, Header, HTTPException, Request
from jose import JWTError, jwt

from order_service.config import get_settings


def verify_token(request: Request, authorization: str = Header(None)) -> dict:
    settings = get_settings()
    try:
        scheme, token = (authorization or "").split()
        if scheme.lower() != "bearer" or not settings.jwt_secret:
            raise ValueError("unsupported authorization")
        claims = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except (ValueError, JWTError):
        raise HTTPException(status_code=401, detail="Invalid or missing token")

    if not claims.get("id"):
        raise HTTPException(status_code=401, detail="Invalid or missing token")

    request.state.user_id = str(claims["id"])
    return claims


def require_admin(claims: dict = Depends(verify_token)) -> dict:
    if not claims.get("isAdmin"):
        raise HTTPException(status_code=403, detail="Access denied. Admins only.")
    return claims
