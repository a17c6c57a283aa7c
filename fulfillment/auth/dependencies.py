from typing import Any, Dict, Optional
from fastapi import HTTPException, Request, status
from fastapi.security import HTTPBearer
from jose import JWTError, jwt
from fulfillment.config.admin_config import admin_config
from fulfillment.config.settings import config_settings


class Authentication(HTTPBearer):
    """Bearer JWT issued by the identity service. Only verification happens here."""

    def __init__(self, auto_error=True):
        super().__init__(auto_error=auto_error)

    async def __call__(self, request: Request) -> Dict[str, Any]:
        auth_creds = await super().__call__(request)
        token = auth_creds.credentials

        decoded_token = self.decode_token(token)
        if not decoded_token or not decoded_token.get("sub"):
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or expired token provided.")
        return decoded_token

    def decode_token(self, token: str) -> Optional[Dict[str, Any]]:
        """To verify the signature , expiration and user claims of token"""
        try:
            return jwt.decode(token, key=config_settings.JWT_SECRET, algorithms=[config_settings.JWT_ALGO])
        except JWTError:
            return None


async def require_admin(request: Request):
    roles = getattr(request.state, "user_roles", None) or []
    if admin_config.ADMIN_ROLE not in roles:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
    return request.state.user_identifier
