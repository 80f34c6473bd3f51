from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Optional, Protocol, Tuple

from sessionguard.clock import Clock, SystemClock, from_timestamp, to_timestamp
from sessionguard.logging import get_logger
from sessionguard.service.errors import (
    MalformedTokenError,
    SignatureMismatchError,
    TokenExpiredError,
    WrongTokenTypeError,
)

logger = get_logger(__name__)

TOKEN_HEADER_TYPE = "AUTH"

_HMAC_DIGESTS = {
    "HS256": hashlib.sha256,
    "HS384": hashlib.sha384,
    "HS512": hashlib.sha512,
}


class TokenType(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"


@dataclass(frozen=True)
class TokenClaims:
    sub: str
    typ: TokenType
    jti: str
    iat: int
    exp: int

    @property
    def issued_at(self) -> datetime:
        return from_timestamp(self.iat)

    @property
    def expires_at(self) -> datetime:
        return from_timestamp(self.exp)

    def to_payload(self) -> dict[str, Any]:
        return {
            "sub": self.sub,
            "typ": self.typ.value,
            "jti": self.jti,
            "iat": self.iat,
            "exp": self.exp,
        }


class Signer(Protocol):
    """Signing strategy; an asymmetric implementation only has to provide these."""

    algorithm: str

    def sign(self, signing_input: bytes) -> bytes: ...

    def verify(self, signing_input: bytes, signature: bytes) -> bool: ...


class HmacSigner:
    def __init__(self, secret: str | bytes, algorithm: str = "HS256") -> None:
        if algorithm not in _HMAC_DIGESTS:
            raise ValueError(f"unsupported HMAC algorithm: {algorithm}")
        if not secret:
            raise ValueError("signing secret must not be empty")
        self.algorithm = algorithm
        self._digest = _HMAC_DIGESTS[algorithm]
        self._key = secret.encode() if isinstance(secret, str) else bytes(secret)

    def sign(self, signing_input: bytes) -> bytes:
        return hmac.new(self._key, signing_input, self._digest).digest()

    def verify(self, signing_input: bytes, signature: bytes) -> bool:
        return hmac.compare_digest(self.sign(signing_input), signature)


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    # validate=True rejects characters outside the urlsafe alphabet
    return base64.b64decode(segment + padding, altchars=b"-_", validate=True)


def _dump_json(data: dict[str, Any]) -> bytes:
    return json.dumps(data, separators=(",", ":"), sort_keys=True).encode()


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


class TokenCodec:
    """Issues and verifies ``header.payload.signature`` tokens.

    The signer's algorithm is pinned: a header naming anything else is refused
    before any key material is touched. The signature is checked over the raw
    segment text, so a changed byte in either segment can only surface as a
    signature mismatch.
    """

    def __init__(
        self,
        signer: Signer,
        *,
        clock: Optional[Clock] = None,
        leeway: timedelta = timedelta(0),
    ) -> None:
        if leeway < timedelta(0):
            raise ValueError("leeway must be >= 0")
        self.signer = signer
        self.clock: Clock = clock or SystemClock()
        self.leeway_seconds = int(leeway.total_seconds())
        self._header_segment = _encode_segment(
            _dump_json({"alg": signer.algorithm, "typ": TOKEN_HEADER_TYPE})
        )

    @property
    def algorithm(self) -> str:
        return self.signer.algorithm

    def issue(
        self,
        subject: str,
        token_type: TokenType,
        ttl: timedelta | int,
        *,
        jti: Optional[str] = None,
    ) -> Tuple[str, TokenClaims]:
        ttl_seconds = int(ttl.total_seconds()) if isinstance(ttl, timedelta) else int(ttl)
        if ttl_seconds <= 0:
            raise ValueError("ttl must be positive")
        iat = to_timestamp(self.clock.now())
        claims = TokenClaims(
            sub=subject,
            typ=TokenType(token_type),
            jti=jti or str(uuid.uuid4()),
            iat=iat,
            exp=iat + ttl_seconds,
        )
        signing_input = f"{self._header_segment}.{_encode_segment(_dump_json(claims.to_payload()))}"
        signature = self.signer.sign(signing_input.encode("ascii"))
        return f"{signing_input}.{_encode_segment(signature)}", claims

    def verify(
        self,
        token: str,
        expected_type: Optional[TokenType] = None,
        *,
        verify_exp: bool = True,
    ) -> TokenClaims:
        if not isinstance(token, str) or not token:
            raise MalformedTokenError("token missing")
        if token.count(".") < 2:
            raise MalformedTokenError("token must have three segments")
        # The MAC covers everything before the last dot, so a stray dot inside
        # a signed segment is caught as a mismatch rather than a shape error
        signed_text, _, sig_b64 = token.rpartition(".")
        header_b64 = signed_text.split(".", 1)[0]

        declared = self._declared_algorithm(header_b64)
        if declared is not None and declared != self.signer.algorithm:
            logger.warning("token_algorithm_rejected", alg=declared)
            raise SignatureMismatchError("algorithm not accepted")

        try:
            signature = _decode_segment(sig_b64)
        except (binascii.Error, ValueError):
            raise SignatureMismatchError("signature not decodable") from None
        if not signature or _encode_segment(signature) != sig_b64:
            raise SignatureMismatchError("signature not canonical")
        if not self.signer.verify(signed_text.encode("utf-8"), signature):
            raise SignatureMismatchError("signature mismatch")

        segments = signed_text.split(".")
        if len(segments) != 2:
            raise MalformedTokenError("token must have three segments")
        header_b64, payload_b64 = segments

        header = self._load_segment(header_b64, "header")
        if header.get("alg") != self.signer.algorithm or header.get("typ") != TOKEN_HEADER_TYPE:
            raise MalformedTokenError("unexpected header")
        claims = self._claims_from_payload(self._load_segment(payload_b64, "payload"))

        if verify_exp:
            now = to_timestamp(self.clock.now())
            if now >= claims.exp + self.leeway_seconds:
                raise TokenExpiredError("token expired", detail={"jti": claims.jti})
        if expected_type is not None and claims.typ != TokenType(expected_type):
            raise WrongTokenTypeError(
                "unexpected token type", detail={"jti": claims.jti, "typ": claims.typ.value}
            )
        return claims

    @staticmethod
    def _declared_algorithm(header_b64: str) -> Optional[str]:
        """Best-effort read of the unauthenticated ``alg``; None if unreadable."""
        try:
            header = json.loads(_decode_segment(header_b64))
        except (binascii.Error, ValueError, UnicodeDecodeError):
            return None
        if not isinstance(header, dict):
            return None
        alg = header.get("alg")
        return alg if isinstance(alg, str) else "<invalid>"

    @staticmethod
    def _load_segment(segment: str, name: str) -> dict[str, Any]:
        try:
            data = json.loads(_decode_segment(segment))
        except (binascii.Error, ValueError, UnicodeDecodeError):
            raise MalformedTokenError(f"{name} not decodable") from None
        if not isinstance(data, dict):
            raise MalformedTokenError(f"{name} is not an object")
        return data

    @staticmethod
    def _claims_from_payload(payload: dict[str, Any]) -> TokenClaims:
        sub, typ, jti = payload.get("sub"), payload.get("typ"), payload.get("jti")
        iat, exp = payload.get("iat"), payload.get("exp")
        if not isinstance(sub, str) or not sub:
            raise MalformedTokenError("sub claim missing")
        if not isinstance(jti, str) or not jti:
            raise MalformedTokenError("jti claim missing")
        if not _is_int(iat) or not _is_int(exp):
            raise MalformedTokenError("iat/exp must be integer seconds")
        try:
            token_type = TokenType(typ)
        except ValueError:
            raise MalformedTokenError("typ claim invalid") from None
        return TokenClaims(sub=sub, typ=token_type, jti=jti, iat=iat, exp=exp)
