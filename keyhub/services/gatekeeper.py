"""Request gatekeeper: the composed check every protected operation passes first"""
from typing import Optional, Tuple

from keyhub.core.credentials import extract_bearer_token, is_valid_api_key_format, mask_api_key
from keyhub.db.gateway import PersistenceGateway
from keyhub.models.domain import ApiKey, Identity, Subscription, SubscriptionView, TokenType
from keyhub.services.access import KeyAccessPolicy
from keyhub.services.sessions import SessionManager
from keyhub.utils.exceptions import (
    InvalidCredential,
    KeyNotFound,
    MissingCredential,
    MissingToken,
    TokenRevoked,
    WrongTokenType,
)
from keyhub.utils.logger import logger


class RequestGatekeeper:
    """
    Authorizes admin requests (bearer session token) and key-holder
    requests (raw API key).

    The gatekeeper never bumps usage counters for admin requests; the
    calling endpoint decides whether to.
    """

    def __init__(
        self,
        sessions: SessionManager,
        gateway: PersistenceGateway,
        access: KeyAccessPolicy,
    ):
        self.sessions = sessions
        self.gateway = gateway
        self.access = access

    async def authorize(self, authorization: Optional[str]) -> Identity:
        """
        Resolve the admin identity behind an ``Authorization`` header.

        Checks, short-circuiting on the first failure:
            1. ``Bearer`` token present             MissingToken
            2. token not in the revocation set      TokenRevoked
            3. token verifies and is an admin token InvalidToken / WrongTokenType
            4. key still exists                     KeyNotFound
               and token version is current         TokenRevoked
            5. key active and admin                 InactiveKey / WrongKeyType
            6. subscription valid (expired inline)  SubscriptionExpired
        """
        token = extract_bearer_token(authorization)
        if token is None:
            raise MissingToken()

        if await self.sessions.is_revoked(token):
            raise TokenRevoked()

        claims = self.sessions.verify(token)
        if claims.type != TokenType.ADMIN:
            raise WrongTokenType()

        api_key = await self.gateway.get_api_key(claims.api_key_uid)
        if api_key is None:
            logger.warning(f"Token presented for deleted key {claims.api_key_uid}")
            raise KeyNotFound()
        if claims.version < api_key.token_version:
            raise TokenRevoked()

        subscription, view = await self.check_key_usable(api_key)
        return Identity(api_key=api_key, subscription=subscription, view=view, claims=claims, token=token)

    async def check_key_usable(
        self, api_key: ApiKey, require_admin: bool = True
    ) -> Tuple[Optional[Subscription], SubscriptionView]:
        return await self.access.check(api_key, require_admin=require_admin)

    async def verify_key_holder(self, raw_api_key: Optional[str]) -> Identity:
        """
        Validate a raw API key presented by a key holder (any key type).

        Usage is not recorded here; the endpoint does it once the request
        has also passed rate limiting.
        """
        raw_api_key = (raw_api_key or "").strip()
        if not raw_api_key:
            raise MissingCredential()
        if not is_valid_api_key_format(raw_api_key):
            raise InvalidCredential()

        api_key = await self.gateway.get_api_key_by_credential(raw_api_key)
        if api_key is None:
            logger.warning(f"Verification with unknown key {mask_api_key(raw_api_key)}")
            raise InvalidCredential()

        subscription, view = await self.check_key_usable(api_key, require_admin=False)
        return Identity(api_key=api_key, subscription=subscription, view=view)
