"""Security utilities for signing and verifying JWT session tokens"""
import uuid
from datetime import timedelta
from typing import Optional, Tuple

from jose import JWTError, jwt

from keyhub.core.config import settings
from keyhub.models.domain import TokenClaims, TokenType
from keyhub.utils.clock import Clock, from_timestamp, to_timestamp, utcnow
from keyhub.utils.exceptions import TokenExpired, TokenMalformed, TokenSignatureInvalid

REQUIRED_CLAIMS = ("sub", "type", "iat", "exp", "jti")


class TokenCodec:
    """
    Mint and verify signed session tokens.

    Verification is a pure computation: it never touches storage. Expiry is
    evaluated against the injected clock instead of wall time.
    """

    def __init__(
        self,
        secret_key: Optional[str] = None,
        algorithm: Optional[str] = None,
        clock: Clock = utcnow,
    ):
        self.secret_key = secret_key or settings.JWT_SECRET_KEY
        self.algorithm = algorithm or settings.JWT_ALGORITHM
        self.clock = clock

    def encode(
        self,
        api_key_uid: str,
        token_type: TokenType,
        ttl_seconds: int,
        version: int = 0,
    ) -> Tuple[str, TokenClaims]:
        """Create a signed token for ``api_key_uid`` valid for ``ttl_seconds``"""
        issued_at = self.clock().replace(microsecond=0)
        expires_at = issued_at + timedelta(seconds=ttl_seconds)
        jti = uuid.uuid4().hex

        to_encode = {
            "sub": api_key_uid,
            "apiKeyUid": api_key_uid,
            "type": token_type.value,
            "iat": to_timestamp(issued_at),
            "exp": to_timestamp(expires_at),
            "jti": jti,
            "ver": version,
        }
        token = jwt.encode(to_encode, self.secret_key, algorithm=self.algorithm)

        claims = TokenClaims(
            api_key_uid=api_key_uid,
            type=token_type,
            issued_at=issued_at,
            expires_at=expires_at,
            jti=jti,
            version=version,
        )
        return token, claims

    def decode(self, token: str) -> TokenClaims:
        """
        Verify and decode a token.

        Raises:
            TokenMalformed: token cannot be parsed or lacks required claims
            TokenSignatureInvalid: token parses but the signature does not match
            TokenExpired: token is past its ``exp`` claim
        """
        if not token or not isinstance(token, str):
            raise TokenMalformed()

        try:
            payload = jwt.decode(
                token,
                self.secret_key,
                algorithms=[self.algorithm],
                options={"verify_exp": False},
            )
        except JWTError:
            raise self._classify_failure(token) from None

        if any(claim not in payload for claim in REQUIRED_CLAIMS):
            raise TokenMalformed()

        try:
            token_type = TokenType(payload["type"])
            claims = TokenClaims(
                api_key_uid=str(payload.get("apiKeyUid") or payload["sub"]),
                type=token_type,
                issued_at=from_timestamp(payload["iat"]),
                expires_at=from_timestamp(payload["exp"]),
                jti=str(payload["jti"]),
                version=int(payload.get("ver", 0)),
            )
        except (ValueError, TypeError, OverflowError):
            raise TokenMalformed() from None

        if self.clock() > claims.expires_at:
            raise TokenExpired()

        return claims

    def remaining_seconds(self, claims: TokenClaims) -> int:
        """Seconds until the token expires, never negative"""
        remaining = (claims.expires_at - self.clock()).total_seconds()
        return max(0, int(remaining))

    @staticmethod
    def _classify_failure(token: str) -> Exception:
        """Tell a structurally broken token apart from a bad signature"""
        try:
            jwt.get_unverified_header(token)
            jwt.get_unverified_claims(token)
        except JWTError:
            return TokenMalformed()
        return TokenSignatureInvalid()
