from __future__ import annotations

import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from taskvault.config import Settings, get_settings, reset_settings_cache
from taskvault.logging import get_logger
from taskvault.service.auth import AuthService
from taskvault.service.passwords import PasswordService
from taskvault.service.tasks import TaskService
from taskvault.service.tokens import TokenIssuer
from taskvault.storage.base import Store
from taskvault.storage.memory import MemoryStore
from taskvault.storage.postgres import PostgresStore

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


def build_store(settings: Settings) -> Store:
    if settings.use_memory_store:
        return MemoryStore(fs_root=settings.shared_fs_root)
    return PostgresStore(settings.database_url)


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        logger.info(
            "runtime_init_started",
            environment=self.settings.environment.value,
            store_type=store_type,
        )
        try:
            self.store = build_store(self.settings)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.tokens = TokenIssuer(self.settings)
        self.passwords = PasswordService(self.settings)
        self.auth = AuthService(
            self.store, self.settings, tokens=self.tokens, passwords=self.passwords
        )
        self.tasks = TaskService(self.store, self.settings)
        logger.info("runtime_init_completed", store_type=store_type)

    def close(self) -> None:
        self.store.close()


runtime: Optional[Runtime] = None
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
