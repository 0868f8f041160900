"""External task queue client (QStash-compatible) and callback verification.

Publishing posts the callback payload to the queue, which later delivers
it to our callback URL with at-least-once semantics. Deliveries carry an
`Upstash-Signature` JWT (HS256) signed with the current or next signing
key; the JWT's `body` claim is the base64url SHA-256 of the raw body.
"""

import base64
import hashlib
import hmac
import json
import logging
import time
from typing import Protocol

import httpx
from jose import ExpiredSignatureError, JWSError, JWTError, jws, jwt

from journalcoach.cli.config import QueueConfig, VerificationMode
from journalcoach.errors import CallbackSignatureError, PipelineError, QueueNotConfigured

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "Upstash-Signature"
EXPECTED_ISSUER = "Upstash"
SIGNING_ALGORITHM = "HS256"


class TaskQueue(Protocol):
    @property
    def is_configured(self) -> bool:
        ...

    async def enqueue(self, callback_path: str, payload: dict) -> str:
        """Publish a payload for delivery to callback_path; return the queue message id."""
        ...


class QStashQueue:
    """Publishes callback payloads through the QStash HTTP API."""

    def __init__(self, config: QueueConfig, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.config = config
        self._transport = transport

    @property
    def is_configured(self) -> bool:
        return self.config.is_configured

    def callback_url(self, callback_path: str) -> str:
        return self.config.callback_base_url.rstrip("/") + "/" + callback_path.lstrip("/")

    async def enqueue(self, callback_path: str, payload: dict) -> str:
        """Publish a payload.

        Raises:
            QueueNotConfigured: If no queue token is configured.
            PipelineError: E-3002 if the queue rejects the publish.
        """
        if not self.config.is_configured:
            raise QueueNotConfigured()

        destination = self.callback_url(callback_path)
        url = f"{self.config.base_url.rstrip('/')}/v2/publish/{destination}"
        try:
            async with httpx.AsyncClient(timeout=15.0, transport=self._transport) as client:
                response = await client.post(
                    url,
                    headers={
                        "Authorization": f"Bearer {self.config.token}",
                        "Content-Type": "application/json",
                        "Upstash-Retries": str(self.config.retries),
                    },
                    content=json.dumps(payload),
                )
        except httpx.HTTPError as e:
            raise PipelineError("E-3002", detail=str(e)) from e

        if response.status_code >= 300:
            raise PipelineError(
                "E-3002", detail=f"HTTP {response.status_code}: {response.text[:200]}"
            )
        message_id = response.json().get("messageId", "")
        logger.info("Published to %s as queue message %s", destination, message_id)
        return message_id


def body_digest(body: bytes) -> str:
    """base64url SHA-256 of a request body, without padding."""
    return base64.urlsafe_b64encode(hashlib.sha256(body).digest()).decode().rstrip("=")


def sign_callback(key: str, body: bytes, url: str = "", now: float | None = None, ttl: int = 300) -> str:
    """Create a signature token the way the queue does (used for local delivery and tests)."""
    issued = int(now if now is not None else time.time())
    claims = {
        "iss": EXPECTED_ISSUER,
        "sub": url,
        "iat": issued,
        "nbf": issued,
        "exp": issued + ttl,
        "body": body_digest(body),
    }
    return jwt.encode(claims, key, algorithm=SIGNING_ALGORITHM)


class CallbackVerifier:
    """Checks queue callback signatures according to a fixed VerificationMode."""

    def __init__(self, mode: VerificationMode, signing_keys: list[str]) -> None:
        # Enforced with no keys rejects every callback; startup validation reports it
        self.mode = mode
        self.signing_keys = signing_keys

    @classmethod
    def from_config(cls, config: QueueConfig) -> "CallbackVerifier":
        return cls(config.verification, config.signing_keys)

    def verify(self, signature: str | None, body: bytes) -> None:
        """Validate a callback.

        Raises:
            CallbackSignatureError: If verification is enforced and fails.
        """
        if self.mode == VerificationMode.DISABLED:
            return
        if not signature:
            raise CallbackSignatureError(f"missing {SIGNATURE_HEADER} header")

        for key in self.signing_keys:
            try:
                jws.verify(signature, key, algorithms=[SIGNING_ALGORITHM])
            except JWSError:
                continue
            self._check_claims(key, signature, body)
            return
        raise CallbackSignatureError("signature matches no signing key")

    def _check_claims(self, key: str, token: str, body: bytes) -> None:
        try:
            claims = jwt.decode(
                token,
                key,
                algorithms=[SIGNING_ALGORITHM],
                issuer=EXPECTED_ISSUER,
                options={"verify_aud": False},
            )
        except ExpiredSignatureError as e:
            raise CallbackSignatureError("token expired") from e
        except JWTError as e:
            raise CallbackSignatureError(f"invalid token: {e}") from e

        claimed_body = str(claims.get("body", "")).rstrip("=")
        if not hmac.compare_digest(claimed_body, body_digest(body)):
            raise CallbackSignatureError("body hash mismatch")
