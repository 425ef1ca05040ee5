from fastapi import Header, HTTPException
from jose import jwt

from payhooks.config import get_settings


def verify_token(authorization: str = Header(...)) -> dict:
    try:
        scheme, token = authorization.split()
        if scheme.lower() != "bearer":
            raise ValueError("unsupported scheme")
        claims = jwt.decode(token, get_settings().jwt_secret, algorithms=["HS256"])
        user_id = claims.get("sub")
        if not user_id:
            raise ValueError("token has no subject")
    except Exception:
        raise HTTPException(status_code=401, detail="Invalid or missing token")
    return {"user_id": user_id}
