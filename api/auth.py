"""
Authentication for AI channel requests.

A request may carry a Firebase ID token:
- no token: trusted-transport fallback, ``editor`` on the caller's workspace
- valid token: role from the ``roles`` claim, workspace from the ``workspace`` claim
- invalid token: ``AuthenticationError``, never a silent downgrade
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import structlog
from firebase_admin import auth
from firebase_admin import exceptions as firebase_exceptions
from pydantic import BaseModel, Field

from api.errors import AuthenticationError
from api.schemas.agent_state import Role
from libs.common.settings import Settings, get_settings
from libs.firebase.client import firebase_configured, initialize_firebase_app

logger = structlog.get_logger(__name__)

ANONYMOUS_USER_ID = "ws-user"


class AuthUser(BaseModel):
    user_id: str
    roles: List[str] = Field(default_factory=list)
    workspace: Optional[str] = None


class TokenValidation(BaseModel):
    valid: bool
    user: Optional[AuthUser] = None
    error: Optional[str] = None


class AuthContext(BaseModel):
    """Identity a request runs under."""

    user_id: str
    role: Role
    workspace: str
    authenticated: bool = False


def resolve_role(roles: List[str]) -> Role:
    """admin overrides viewer; editor is the default."""
    if "admin" in roles:
        return "admin"
    if "viewer" in roles:
        return "viewer"
    return "editor"


class AuthManager(ABC):
    @abstractmethod
    async def validate_token(self, token: str) -> TokenValidation:
        ...


class FirebaseAuthManager(AuthManager):
    """Validates Firebase ID tokens with the Admin SDK."""

    def __init__(self, settings: Optional[Settings] = None, check_revoked: bool = False):
        self.settings = settings or get_settings()
        self.check_revoked = check_revoked
        initialize_firebase_app(self.settings)

    async def validate_token(self, token: str) -> TokenValidation:
        try:
            # verify_id_token may fetch signing certificates over the network
            claims: Dict[str, Any] = await asyncio.to_thread(
                auth.verify_id_token, token, check_revoked=self.check_revoked
            )
        except (ValueError, firebase_exceptions.FirebaseError) as e:
            logger.warning("Token validation failed", error_type=type(e).__name__)
            return TokenValidation(valid=False, error=str(e))

        roles = claims.get("roles") or []
        if isinstance(roles, str):
            roles = [roles]
        return TokenValidation(
            valid=True,
            user=AuthUser(user_id=claims["uid"], roles=list(roles), workspace=claims.get("workspace")),
        )


def create_auth_manager(settings: Optional[Settings] = None) -> Optional[AuthManager]:
    """Firebase manager when credentials are configured, else None."""
    settings = settings or get_settings()
    if not firebase_configured(settings):
        logger.info("No auth backend configured, tokens will not be verified")
        return None
    return FirebaseAuthManager(settings)


async def authenticate(
    token: Optional[str],
    workspace: Optional[str],
    auth_manager: Optional[AuthManager],
    settings: Optional[Settings] = None,
) -> AuthContext:
    """
    Resolve the identity of one request.

    Raises:
        AuthenticationError: A token was supplied and rejected
    """
    settings = settings or get_settings()
    fallback_workspace = workspace or settings.fallback_workspace

    if not token:
        return AuthContext(user_id=ANONYMOUS_USER_ID, role="editor", workspace=fallback_workspace)

    if auth_manager is None:
        logger.warning("Token supplied but no auth backend configured, using fallback identity")
        return AuthContext(user_id=ANONYMOUS_USER_ID, role="editor", workspace=fallback_workspace)

    validation = await auth_manager.validate_token(token)
    if not validation.valid or validation.user is None:
        raise AuthenticationError("Invalid or expired token")

    user = validation.user
    return AuthContext(
        user_id=user.user_id,
        role=resolve_role(user.roles),
        workspace=user.workspace or fallback_workspace,
        authenticated=True,
    )
