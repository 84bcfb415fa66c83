"""Authentication and authorization dependencies."""

import asyncio
import logging
import time
from typing import Callable, Dict, Iterable, List, Optional

import httpx
import jwt
from fastapi import Depends, Header

from uploader import config
from uploader.exceptions import InsufficientRoleError, InvalidTokenError
from uploader.types import Identity

logger = logging.getLogger(__name__)

DEV_IDENTITY = Identity(user_id="dev-user", email="dev@localhost", name="Development User", role="superadmin")


def role_for_email(
    email: Optional[str],
    superadmin_emails: Iterable[str] = (),
    admin_emails: Iterable[str] = (),
) -> str:
    """
    Map an email address to a role; unknown addresses are plain users.
    """
    if not email:
        return "user"
    email = email.lower()
    if email in {e.lower() for e in superadmin_emails}:
        return "superadmin"
    if email in {e.lower() for e in admin_emails}:
        return "admin"
    return "user"


class TokenVerifier:
    """
    Verifies RS256 bearer tokens against a JWKS endpoint.

    The key set is cached until expires_at and refreshed on expiry or when a
    token names a key id the cache does not know.
    """

    def __init__(
        self,
        jwks_url: str,
        audience: Optional[str] = None,
        issuer: Optional[str] = None,
        ttl_seconds: int = 3600,
        client: Optional[httpx.AsyncClient] = None,
        clock: Callable[[], float] = time.time,
        algorithms: Iterable[str] = ("RS256",),
        min_refresh_interval: float = 30.0,
        superadmin_emails: Iterable[str] = (),
        admin_emails: Iterable[str] = (),
    ):
        self.jwks_url = jwks_url
        self.audience = audience
        self.issuer = issuer
        self.ttl_seconds = ttl_seconds
        self.algorithms: List[str] = list(algorithms)
        self.min_refresh_interval = min_refresh_interval
        self.superadmin_emails = list(superadmin_emails)
        self.admin_emails = list(admin_emails)
        self._client = client
        self._clock = clock
        self._keys: Dict[str, jwt.PyJWK] = {}
        self._expires_at = 0.0
        self._last_refresh: Optional[float] = None
        self._lock = asyncio.Lock()

    @property
    def expires_at(self) -> float:
        return self._expires_at

    async def refresh(self, force: bool = False) -> None:
        """
        Fetch the key set unless the cache is still fresh.

        Args:
            force: Refetch even if the cache has not expired

        Raises:
            InvalidTokenError: If no keys can be loaded and none are cached
        """
        async with self._lock:
            now = self._clock()
            if self._keys and not force and now < self._expires_at:
                return
            if force and self._last_refresh is not None and now - self._last_refresh < self.min_refresh_interval:
                return

            try:
                data = await self._fetch_jwks()
                keyset = jwt.PyJWKSet.from_dict(data)
            except (httpx.HTTPError, ValueError, jwt.PyJWTError) as e:
                if self._keys:
                    logger.warning(f"Signing key refresh failed, keeping cached keys: {e}")
                    self._last_refresh = now
                    self._expires_at = max(self._expires_at, now + self.min_refresh_interval)
                    return
                logger.error(f"Could not load signing keys from {self.jwks_url}: {e}")
                raise InvalidTokenError("Unable to load token signing keys") from e

            self._keys = {key.key_id: key for key in keyset.keys if key.key_id}
            self._expires_at = now + self.ttl_seconds
            self._last_refresh = now
            logger.info(f"Loaded {len(self._keys)} signing keys from {self.jwks_url}")

    async def _fetch_jwks(self) -> dict:
        if self._client is not None:
            response = await self._client.get(self.jwks_url)
        else:
            async with httpx.AsyncClient(timeout=10.0) as client:
                response = await client.get(self.jwks_url)
        response.raise_for_status()
        return response.json()

    async def _signing_key(self, kid: str) -> jwt.PyJWK:
        if self._clock() >= self._expires_at:
            await self.refresh()

        if kid not in self._keys:
            await self.refresh(force=True)

        key = self._keys.get(kid)
        if key is None:
            raise InvalidTokenError(f"Unknown signing key id: {kid}")
        return key

    async def verify(self, token: str) -> Identity:
        """
        Verify a token and resolve the caller.

        Raises:
            InvalidTokenError: Malformed, expired, or wrongly signed token
        """
        try:
            header = jwt.get_unverified_header(token)
        except jwt.PyJWTError as e:
            raise InvalidTokenError("Invalid token format") from e

        kid = header.get("kid")
        if not kid:
            raise InvalidTokenError("Token has no key id")

        key = await self._signing_key(kid)

        try:
            claims = jwt.decode(
                token,
                key.key,
                algorithms=self.algorithms,
                audience=self.audience,
                issuer=self.issuer,
                options={"verify_aud": self.audience is not None},
            )
        except jwt.PyJWTError as e:
            raise InvalidTokenError(f"Token verification failed: {e}") from e

        user_id = claims.get("sub")
        if not user_id:
            raise InvalidTokenError("Token has no subject")

        email = claims.get("email")
        role = claims.get("role") or role_for_email(email, self.superadmin_emails, self.admin_emails)
        return Identity(user_id=user_id, email=email, name=claims.get("name"), role=role)


_verifier: Optional[TokenVerifier] = None


def get_token_verifier() -> TokenVerifier:
    """Lazily build the process-wide verifier from config."""
    global _verifier
    if _verifier is None:
        _verifier = TokenVerifier(
            jwks_url=config.AUTH_JWKS_URL,
            audience=config.AUTH_AUDIENCE,
            issuer=config.AUTH_ISSUER,
            ttl_seconds=config.AUTH_KEYS_TTL_SECONDS,
            superadmin_emails=config.SUPERADMIN_EMAILS,
            admin_emails=config.ADMIN_EMAILS,
        )
    return _verifier


async def get_current_user(
    authorization: Optional[str] = Header(None),
    verifier: TokenVerifier = Depends(get_token_verifier),
) -> Identity:
    """
    FastAPI dependency to validate the bearer token and resolve the caller.

    Args:
        authorization: Authorization header value (format: "Bearer <token>")

    Returns:
        Identity of the authenticated user

    Raises:
        InvalidTokenError: If the header is missing or the token is invalid
    """
    if config.AUTH_DISABLED:
        logger.warning("Token validation is disabled; using development identity")
        return DEV_IDENTITY

    if not authorization or not authorization.startswith("Bearer "):
        raise InvalidTokenError("Invalid authorization header format")

    token = authorization[len("Bearer "):].strip()
    if not token:
        raise InvalidTokenError("Missing bearer token")

    return await verifier.verify(token)


def require_role(*roles: str):
    """
    Build a dependency that only admits callers holding one of roles.
    """
    async def _check(identity: Identity = Depends(get_current_user)) -> Identity:
        if identity.role not in roles:
            raise InsufficientRoleError(f"Requires role: {', '.join(roles)}")
        return identity

    return _check
