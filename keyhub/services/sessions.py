"""Admin session tokens: login, refresh rotation, logout and revocation"""
from datetime import timedelta
from typing import Optional, Tuple

from keyhub.core.config import settings
from keyhub.core.credentials import mask_api_key
from keyhub.core.locks import KeyLockRegistry
from keyhub.core.security import TokenCodec
from keyhub.db.gateway import PersistenceGateway
from keyhub.models.domain import ApiKey, ClientInfo, TokenClaims, TokenPair, TokenType
from keyhub.services.access import KeyAccessPolicy
from keyhub.services.audit import AuditService
from keyhub.utils.clock import Clock, utcnow
from keyhub.utils.exceptions import (
    InvalidCredential,
    InvalidRefreshToken,
    InvalidToken,
    MissingCredential,
    MissingToken,
    NotFound,
    TokenRevoked,
)
from keyhub.utils.logger import logger

LOGIN_ENDPOINT = "/api/admin/auth/validate"


class SessionManager:
    """
    Mints, verifies and revokes admin session tokens.

    Access tokens live ``ACCESS_TOKEN_EXPIRE_SECONDS`` (1 hour), refresh
    tokens ``REFRESH_TOKEN_EXPIRE_SECONDS`` (7 days). Every token carries
    the key's ``token_version``; bumping it invalidates all outstanding
    sessions of that key at once.
    """

    def __init__(
        self,
        gateway: PersistenceGateway,
        codec: TokenCodec,
        locks: KeyLockRegistry,
        access: KeyAccessPolicy,
        audit: AuditService,
        clock: Clock = utcnow,
        access_ttl: Optional[int] = None,
        refresh_ttl: Optional[int] = None,
    ):
        self.gateway = gateway
        self.codec = codec
        self.locks = locks
        self.access = access
        self.audit = audit
        self.clock = clock
        self.access_ttl = access_ttl or settings.ACCESS_TOKEN_EXPIRE_SECONDS
        self.refresh_ttl = refresh_ttl or settings.REFRESH_TOKEN_EXPIRE_SECONDS

    # ==================== TOKENS ====================

    def issue_access_token(self, api_key: ApiKey) -> Tuple[str, TokenClaims]:
        return self.codec.encode(api_key.uid, TokenType.ADMIN, self.access_ttl, version=api_key.token_version)

    def issue_refresh_token(self, api_key: ApiKey) -> Tuple[str, TokenClaims]:
        return self.codec.encode(api_key.uid, TokenType.REFRESH, self.refresh_ttl, version=api_key.token_version)

    def verify(self, token: str) -> TokenClaims:
        """Signature and expiry check only; never consults storage"""
        return self.codec.decode(token)

    async def is_revoked(self, token: str) -> bool:
        return await self.gateway.is_revoked(token, self.clock())

    async def revoke(self, token: str, ttl_seconds: Optional[int] = None) -> TokenClaims:
        """
        Add a verifiable token to the revocation set.

        The entry lives ``ttl_seconds`` or, by default, as long as the
        token itself would have.

        Raises:
            InvalidToken: the token does not verify
        """
        claims = self.verify(token)
        ttl = self.codec.remaining_seconds(claims) if ttl_seconds is None else ttl_seconds
        await self.gateway.add_revoked(token, self.clock() + timedelta(seconds=max(ttl, 1)))
        return claims

    def _issue_pair(self, api_key: ApiKey) -> TokenPair:
        access_token, _ = self.issue_access_token(api_key)
        refresh_token, _ = self.issue_refresh_token(api_key)
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=self.access_ttl,
            api_key=api_key,
        )

    # ==================== SESSIONS ====================

    async def login(self, raw_api_key: Optional[str], client: Optional[ClientInfo] = None) -> TokenPair:
        """
        Exchange an admin API key for a token pair.

        Raises:
            MissingCredential, InvalidCredential, InactiveKey, WrongKeyType,
            SubscriptionExpired
        """
        raw_api_key = (raw_api_key or "").strip()
        if not raw_api_key:
            raise MissingCredential()

        api_key = await self.gateway.get_api_key_by_credential(raw_api_key)
        if api_key is None:
            logger.warning(f"Login attempt with unknown key {mask_api_key(raw_api_key)} "
                           f"from {client.ip_address if client else 'unknown'}")
            raise InvalidCredential()

        await self.access.check(api_key, require_admin=True)

        pair = self._issue_pair(api_key)
        await self.audit.record_usage(api_key.uid, LOGIN_ENDPOINT, "POST", 200, client)
        await self.audit.log_action("admin_login", api_key.uid, {"name": api_key.name}, client)
        logger.info(f"Admin login: {api_key.name} ({api_key.uid})")
        return pair

    async def refresh(self, refresh_token: Optional[str], client: Optional[ClientInfo] = None) -> TokenPair:
        """
        Rotate a refresh token into a brand-new pair.

        The presented refresh token is revoked on success, so it can
        never mint a second pair. Subscription state is re-validated.

        Raises:
            MissingToken, TokenRevoked, InvalidRefreshToken, InactiveKey,
            WrongKeyType, SubscriptionExpired
        """
        if not refresh_token:
            raise MissingToken()
        if await self.is_revoked(refresh_token):
            raise TokenRevoked()

        try:
            claims = self.verify(refresh_token)
        except InvalidToken:
            raise InvalidRefreshToken() from None
        if claims.type != TokenType.REFRESH:
            raise InvalidRefreshToken()

        lock_name = f"refresh:{claims.jti}"
        try:
            async with self.locks.hold(lock_name):
                # a concurrent refresh of the same token may have just rotated it
                if await self.is_revoked(refresh_token):
                    raise TokenRevoked()

                api_key = await self.gateway.get_api_key(claims.api_key_uid)
                if api_key is None:
                    raise InvalidRefreshToken()
                if claims.version < api_key.token_version:
                    raise TokenRevoked()

                await self.access.check(api_key, require_admin=True)

                pair = self._issue_pair(api_key)
                await self.gateway.add_revoked(
                    refresh_token, self.clock() + timedelta(seconds=self.refresh_ttl)
                )
        finally:
            await self.locks.cleanup(lock_name)

        await self.audit.log_action("token_refresh", api_key.uid, None, client)
        logger.info(f"Session refreshed for key {api_key.uid}")
        return pair

    async def logout(self, access_token: Optional[str], client: Optional[ClientInfo] = None) -> None:
        """Revoke the access token for its remaining lifetime; always succeeds"""
        if not access_token:
            return
        try:
            claims = self.verify(access_token)
        except InvalidToken as e:
            logger.debug(f"Logout with unverifiable token ignored: {e.code}")
            return

        ttl = self.codec.remaining_seconds(claims) or self.access_ttl
        await self.gateway.add_revoked(access_token, self.clock() + timedelta(seconds=ttl))
        await self.audit.log_action("admin_logout", claims.api_key_uid, None, client)
        logger.info(f"Session closed for key {claims.api_key_uid}")

    async def revoke_all(self, api_key_uid: str) -> ApiKey:
        """Invalidate every outstanding token of a key by bumping its token version"""
        async with self.locks.hold(api_key_uid):
            api_key = await self.gateway.get_api_key(api_key_uid)
            if api_key is None:
                raise NotFound()
            return await self.gateway.put_api_key(api_key_uid, {"token_version": api_key.token_version + 1})
