import base64
import hashlib
import hmac
import time
from typing import Callable

from filedrop.models import SessionPayload


def b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def b64url_decode(value: str) -> bytes:
    padded = value + "=" * (-len(value) % 4)
    return base64.urlsafe_b64decode(padded.encode("utf-8"))


class TokenCodec:
    """Stateless session tokens: ``b64url(json) + "." + b64url(hmac_sha256)``.

    Verification needs nothing but the secret, so there is no server-side
    revocation; a token stays valid until ``expiresAt``.
    """

    def __init__(self, secret_key: str, clock: Callable[[], float] = time.time):
        self.secret_key = secret_key.encode("utf-8")
        self._clock = clock

    def now(self) -> float:
        return self._clock()

    def _signature(self, data: str) -> str:
        digest = hmac.new(self.secret_key, data.encode("utf-8"), hashlib.sha256).digest()
        return b64url_encode(digest)

    def sign(self, payload: SessionPayload) -> str:
        body = payload.model_dump_json(by_alias=True).encode("utf-8")
        data = b64url_encode(body)
        return f"{data}.{self._signature(data)}"

    def verify(self, token: str) -> SessionPayload | None:
        parts = token.split(".")
        if len(parts) != 2:
            return None
        data, signature = parts
        expected = self._signature(data)
        if not hmac.compare_digest(expected.encode("utf-8"), signature.encode("utf-8")):
            return None
        try:
            payload = SessionPayload.model_validate_json(b64url_decode(data))
        except ValueError:
            return None
        if payload.expires_at < self.now():
            return None
        return payload
