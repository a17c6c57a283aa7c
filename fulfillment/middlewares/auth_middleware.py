from typing import List
from fastapi import Request, status
from starlette.middleware.base import BaseHTTPMiddleware
from fulfillment.auth.dependencies import Authentication
from fulfillment.common.logging_setup import get_logger
from fulfillment.common.utils import build_error, json_error

logger = get_logger("fulfillment.middlewares.auth")


class AuthenticationMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, *, paths: List[str]):
        super().__init__(app)
        self.paths = paths

    async def dispatch(self, request: Request, call_next):

        if any(request.url.path.startswith(p) for p in self.paths):
            return await call_next(request)

        try:
            auth_token = await Authentication()(request)
        except Exception as e:
            reason = getattr(e, "detail", "Missing or Invalid Auth Headers")
            logger.warning("auth.middleware.failed", extra={
                "reason": reason,
                "path": request.url.path,
                "method": request.method
            })
            payload = build_error(code="INVALID_AUTH", details={"message": "Missing or Invalid Auth Headers"})
            return json_error(payload, status_code=status.HTTP_401_UNAUTHORIZED)

        request.state.user_identifier = str(auth_token["sub"])
        request.state.user_email = auth_token.get("email")
        request.state.user_roles = auth_token.get("roles") or []

        return await call_next(request)
