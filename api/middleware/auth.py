# api/middleware/auth.py
from __future__ import annotations

import re
from datetime import datetime, timedelta
from typing import Dict, List, Optional
from uuid import uuid4

from fastapi import Depends, Request, status
from fastapi.responses import JSONResponse
from jose import JWTError, jwt
from starlette.middleware.base import BaseHTTPMiddleware

from api.core.config import settings
from api.core.exceptions import AuthenticationError, AuthorizationError
from api.core.logging import get_structlog_logger

logger = get_structlog_logger()


def _unauthorized(code: str, message: str, status_code: int = status.HTTP_401_UNAUTHORIZED) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"code": code, "message": message, "details": {}},
        headers={"WWW-Authenticate": "Bearer"} if status_code == status.HTTP_401_UNAUTHORIZED else None,
    )


class AuthMiddleware(BaseHTTPMiddleware):
    """Bearer-token authentication for API routes."""

    def __init__(self, app, exempt_paths: Optional[List[str]] = None):
        super().__init__(app)
        self.exempt_paths = exempt_paths or [
            "/",
            f"{settings.api_prefix}/health(/.*)?",
            "/metrics",
            "/docs",
            "/redoc",
            "/openapi.json",
        ]
        self.exempt_patterns = [re.compile(path) for path in self.exempt_paths]

    async def dispatch(self, request: Request, call_next):
        if request.method == "OPTIONS" or self._is_exempt_path(request.url.path):
            return await call_next(request)

        token = self._extract_token(request)
        if not token:
            logger.warning("auth.missing_token", path=request.url.path, method=request.method)
            return _unauthorized("missing_token", "Authentication token is required")

        payload = TokenManager.verify_token(token)
        if payload is None:
            logger.warning("auth.invalid_token", path=request.url.path)
            return _unauthorized("invalid_token", "Invalid or expired authentication token")

        if "exp" not in payload:
            logger.warning("auth.token_without_expiry", path=request.url.path, user_id=payload.get("sub"))
            return _unauthorized("expired_token", "Token has expired")

        if not payload.get("active", True):
            logger.warning("auth.inactive_user", path=request.url.path, user_id=payload.get("sub"))
            return _unauthorized(
                "inactive_user",
                "User account is inactive",
                status_code=status.HTTP_403_FORBIDDEN,
            )

        try:
            user_id = int(payload.get("sub"))
        except (TypeError, ValueError):
            logger.warning("auth.invalid_subject", path=request.url.path)
            return _unauthorized("invalid_token", "Token subject is not a user id")

        request.state.user = {
            "id": user_id,
            "email": payload.get("email"),
            "role": payload.get("role"),
        }

        logger.debug(
            "auth.authenticated",
            user_id=user_id,
            role=payload.get("role"),
            path=request.url.path,
        )

        return await call_next(request)

    def _is_exempt_path(self, path: str) -> bool:
        return any(pattern.fullmatch(path) for pattern in self.exempt_patterns)

    def _extract_token(self, request: Request) -> Optional[str]:
        """Extract token from Authorization header."""
        auth_header = request.headers.get("Authorization")
        if not auth_header:
            return None

        # Support both "Bearer <token>" and "Token <token>" formats
        parts = auth_header.split()
        if len(parts) != 2:
            return None

        scheme, token = parts
        if scheme.lower() not in ["bearer", "token"]:
            return None

        return token


class TokenManager:
    """Manager for JWT token operations."""

    @staticmethod
    def create_access_token(
        data: Dict,
        expires_delta: Optional[timedelta] = None
    ) -> str:
        to_encode = data.copy()
        if "sub" in to_encode:
            to_encode["sub"] = str(to_encode["sub"])

        expire = datetime.utcnow() + (
            expires_delta or timedelta(minutes=settings.access_token_expire_minutes)
        )

        to_encode.update({
            "exp": expire,
            "iat": datetime.utcnow(),
            "jti": str(uuid4()),
            "type": "access",
        })

        return jwt.encode(
            to_encode,
            settings.secret_key,
            algorithm=settings.algorithm,
        )

    @staticmethod
    def verify_token(token: str) -> Optional[Dict]:
        """Decode a token; None when the signature or expiry check fails."""
        try:
            return jwt.decode(
                token,
                settings.secret_key,
                algorithms=[settings.algorithm],
                options={"verify_aud": False},
            )
        except JWTError:
            return None


# Helper functions for route dependencies
async def get_current_user(request: Request) -> Dict:
    """Get current user from request state."""
    user = getattr(request.state, "user", None)
    if not user:
        raise AuthenticationError(message="User not authenticated")
    return user


async def require_import_role(user: Dict = Depends(get_current_user)) -> Dict:
    """Only roles allowed to bulk-import leads pass."""
    allowed_roles = settings.roles_allowed_to_import()

    if user.get("role") not in allowed_roles:
        raise AuthorizationError(
            message=f"Requires one of roles: {', '.join(allowed_roles)}",
            details={"user_role": user.get("role"), "allowed_roles": allowed_roles},
        )
    return user
