"""Bearer token handling for API callers.

Tokens are signed with a shared secret. ``sub`` is the opaque actor id and
the optional ``roles`` claim (a list or a single string) is used as the role
source when no external role service is configured.
"""
from typing import Any, Dict, List, Optional

import jwt

from ..config.settings import settings
from ..domain.errors import AuthenticationError
from ..domain.models import ActorContext
from .logger import get_logger

logger = get_logger(__name__)

BEARER = "Bearer "


def _roles_claim(claims: Dict[str, Any]) -> List[str]:
    roles = claims.get("roles") or []
    if isinstance(roles, str):
        roles = [roles]
    return [str(role) for role in roles]


class JWTValidator:

    def __init__(
        self,
        secret: Optional[str] = None,
        algorithm: Optional[str] = None,
        audience: Optional[str] = None
    ):
        self.secret = secret or settings.jwt_secret
        self.algorithm = algorithm or settings.jwt_algorithm
        # Blank audience disables the aud check
        self.audience = settings.jwt_audience if audience is None else audience

    def validate_token(self, token: str) -> Dict[str, Any]:
        """Decode ``token`` (``Bearer`` prefix optional) and return its claims.

        Raises AuthenticationError for anything PyJWT refuses, and for tokens
        without a ``sub``.
        """
        if token.startswith(BEARER):
            token = token[len(BEARER):]
        if not token:
            raise AuthenticationError("Token is missing")

        try:
            return jwt.decode(
                token,
                self.secret,
                algorithms=[self.algorithm],
                audience=self.audience or None,
                options={"verify_aud": bool(self.audience), "require": ["sub"]},
            )
        except jwt.ExpiredSignatureError:
            raise AuthenticationError("Token has expired")
        except jwt.PyJWTError as e:
            logger.warning(f"Rejected bearer token: {e}")
            raise AuthenticationError(f"Invalid token: {e}")

    def get_actor_context(self, token: str) -> ActorContext:
        claims = self.validate_token(token)
        return ActorContext(
            actor_id=str(claims["sub"]),
            display_name=claims.get("name"),
            roles=_roles_claim(claims),
        )


_validator: Optional[JWTValidator] = None


def get_jwt_validator() -> JWTValidator:
    global _validator
    if _validator is None:
        _validator = JWTValidator()
    return _validator


def get_current_user(authorization: Optional[str]) -> ActorContext:
    """Actor behind an ``Authorization`` header value"""
    if not authorization:
        raise AuthenticationError("Authorization header is missing")
    return get_jwt_validator().get_actor_context(authorization)
