from fastapi import Header, HTTPException
from jose import JWTError, jwt

from trustlayer.config import get_settings


def verify_token(authorization: str = Header(...)):
    """Bearer JWT check for operator actions (refunds, fund release)."""
    try:
        scheme, token = authorization.split()
        if scheme.lower() != "bearer":
            raise ValueError("unsupported scheme")
        return jwt.decode(token, get_settings().jwt_secret, algorithms=["HS256"])
    except (ValueError, JWTError):
        raise HTTPException(status_code=401, detail="Invalid or missing token")
