from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import os
import time
from dataclasses import dataclass
from typing import Optional
from urllib.parse import quote

from cryptography.fernet import Fernet, InvalidToken

from authkernel.logging import get_logger
from authkernel.storage.common import EntityStore
from authkernel.storage.models import Authenticator, User

logger = get_logger(__name__)


class TotpVerifier:
    """RFC 6238 TOTP with secrets sealed at rest by Fernet."""

    def __init__(self, key_material: str, *, interval: int = 30, digits: int = 6, skew_steps: int = 1):
        self._cipher = Fernet(self._derive_cipher_key(key_material))
        self.interval = interval
        self.digits = digits
        self.skew_steps = skew_steps

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    @staticmethod
    def new_secret() -> str:
        return base64.b32encode(os.urandom(20)).decode("utf-8").rstrip("=")

    def seal(self, secret: str) -> str:
        return self._cipher.encrypt(secret.encode()).decode()

    def unseal(self, sealed: str) -> Optional[str]:
        try:
            return self._cipher.decrypt(sealed.encode()).decode()
        except InvalidToken:
            logger.warning("totp_secret_unseal_failed")
            return None

    def provisioning_uri(self, secret: str, account: str, issuer: str) -> str:
        label = quote(f"{issuer}:{account}")
        return f"otpauth://totp/{label}?secret={secret}&issuer={quote(issuer)}&digits={self.digits}"

    def generate(self, secret: str, timestamp: Optional[float] = None) -> str:
        padded = secret + "=" * ((8 - len(secret) % 8) % 8)
        try:
            key = base64.b32decode(padded, True)
        except (binascii.Error, ValueError):
            logger.warning("totp_secret_invalid")
            return ""
        moment = time.time() if timestamp is None else timestamp
        counter = int(moment // self.interval).to_bytes(8, "big")
        digest = hmac.new(key, counter, hashlib.sha1).digest()
        offset = digest[-1] & 0x0F
        code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
            10**self.digits
        )
        return str(code_int).zfill(self.digits)

    def verify(self, secret: str, code: str, *, timestamp: Optional[float] = None) -> bool:
        if not code or not code.isdigit():
            return False
        moment = time.time() if timestamp is None else timestamp
        for step in range(-self.skew_steps, self.skew_steps + 1):
            generated = self.generate(secret, moment + step * self.interval)
            # constant-time comparison
            if generated and hmac.compare_digest(generated, code):
                return True
        return False


@dataclass
class Enrollment:
    secret: str
    otpauth_uri: str


def enroll_totp(
    store: EntityStore, totp: TotpVerifier, tenant_id: str, user: User, *, issuer: str
) -> Enrollment:
    """Start (or restart) a TOTP enrollment; the factor stays inactive until confirmed."""
    secret = totp.new_secret()
    store.authenticators.remove(tenant_id, user.user_id)
    store.authenticators.create(
        tenant_id,
        Authenticator(user_id=user.user_id, tenant_id=tenant_id, secret=totp.seal(secret)),
    )
    logger.info("mfa_enrollment_started", tenant_id=tenant_id, user_id=user.user_id)
    return Enrollment(secret=secret, otpauth_uri=totp.provisioning_uri(secret, user.email, issuer))


def confirm_totp(
    store: EntityStore, totp: TotpVerifier, tenant_id: str, user_id: str, code: str
) -> bool:
    authenticator = store.authenticators.get(tenant_id, user_id)
    if authenticator is None:
        return False
    secret = totp.unseal(authenticator.secret)
    if not secret or not totp.verify(secret, code):
        logger.warning("mfa_enrollment_confirm_failed", tenant_id=tenant_id, user_id=user_id)
        return False
    return store.authenticators.update(tenant_id, user_id, {"confirmed": True})
