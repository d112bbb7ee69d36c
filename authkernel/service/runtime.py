from __future__ import annotations

import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from argon2 import PasswordHasher, Type

from authkernel.config import Settings, StorageBackend, get_settings, reset_settings_cache
from authkernel.logging import get_logger
from authkernel.service.codes import CodeIssuer
from authkernel.service.egress import AllowlistedFetcher, build_action_network_policy
from authkernel.service.email import DEFAULT_OUTBOX_SIZE, EmailSender, LoggingEmailSender
from authkernel.service.login_session import LoginSessionManager
from authkernel.service.mfa import TotpVerifier
from authkernel.service.pipeline import ActionExecutor
from authkernel.service.tokens import TokenService
from authkernel.storage.common import EntityStore
from authkernel.storage.kv import KVStore
from authkernel.storage.memory import MemoryStore
from authkernel.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a DSN with ``***`` for logging."""
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(parsed._replace(netloc=netloc))


def build_store(settings: Settings) -> EntityStore:
    backend = settings.storage_backend
    if backend is StorageBackend.POSTGRES:
        return PostgresStore(settings.database_url)
    if backend is StorageBackend.KV:
        store = KVStore(
            settings.redis_url, code_retention_seconds=settings.code_retention_seconds
        )
        store.verify_connection()
        return store
    return MemoryStore()


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store: Optional[EntityStore] = None,
        email_sender: Optional[EmailSender] = None,
        fetcher: Optional[AllowlistedFetcher] = None,
    ):
        self.settings = settings or get_settings()
        backend = self.settings.storage_backend.value
        logger.info("runtime_init_started", storage_backend=backend, test_mode=self.settings.test_mode)
        try:
            self.store = store or build_store(self.settings)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                storage_backend=backend,
                database_url=_mask_url_password(self.settings.database_url),
                redis_url=_mask_url_password(self.settings.redis_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", storage_backend=self.store.backend)

        self.password_hasher = PasswordHasher(type=Type.ID)
        self.totp = TotpVerifier(self.settings.mfa_encryption_key or self.settings.jwt_secret)
        # only test runs retain message bodies
        self.email_sender = email_sender or LoggingEmailSender(
            outbox_size=DEFAULT_OUTBOX_SIZE if self.settings.test_mode else 0
        )
        self.fetcher = fetcher or AllowlistedFetcher(
            build_action_network_policy(
                allowlist=self.settings.action_request_allowlist,
                proxy_url=self.settings.action_request_proxy_url,
                total_timeout=self.settings.pipeline_step_timeout_ms / 1000.0,
            )
        )
        self.codes = CodeIssuer(self.store, self.settings)
        self.tokens = TokenService(self.store, self.settings, self.codes)
        self.pipeline = ActionExecutor(
            self.store,
            self.settings,
            fetcher=self.fetcher,
            email_sender=self.email_sender,
            password_hasher=self.password_hasher,
        )
        self.logins = LoginSessionManager(
            self.store,
            self.settings,
            codes=self.codes,
            tokens=self.tokens,
            pipeline=self.pipeline,
            totp=self.totp,
            password_hasher=self.password_hasher,
        )

    def close(self) -> None:
        self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime
    with _runtime_lock:
        if runtime is not None:
            runtime.close()
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
