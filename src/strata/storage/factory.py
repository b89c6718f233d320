"""Backend selection: build the one active provider from settings."""

from __future__ import annotations

from collections.abc import Mapping
from typing import TYPE_CHECKING, Any

import structlog

from strata.config.loader import resolve_mysql_password
from strata.constants import BACKEND_JSON, BACKEND_MYSQL, BACKEND_SQLITE
from strata.storage.document import DocumentProvider

if TYPE_CHECKING:
    from strata.config.schema import StrataSettings
    from strata.storage.provider import StorageProvider


def open_document_provider(
    settings: StrataSettings, *, logger: Any | None = None
) -> DocumentProvider:
    provider = DocumentProvider(
        settings.data_dir,
        layout=settings.document.layout,
        directory_name=settings.document.directory,
        file_name=settings.document.file,
        logger=logger,
    )
    provider.start()
    return provider


def open_provider(
    settings: StrataSettings,
    *,
    environ: Mapping[str, str] | None = None,
    logger: Any | None = None,
) -> StorageProvider:
    """Create and start the provider selected by ``storage.type``."""

    log = logger if logger is not None else structlog.get_logger(__name__)
    provider: StorageProvider
    if settings.backend == BACKEND_JSON:
        provider = open_document_provider(settings, logger=logger)
    elif settings.backend == BACKEND_SQLITE:
        from strata.storage.sqlite import BusyRetry, SQLiteProvider

        provider = SQLiteProvider(
            settings.sqlite_path,
            busy=BusyRetry(
                timeout_ms=settings.sqlite.busy_timeout_ms,
                retries=settings.sqlite.busy_retry_limit,
                backoff_ms=settings.sqlite.busy_retry_backoff_ms,
            ),
            connection_timeout=settings.sqlite.connection_timeout_seconds,
            logger=logger,
        )
        provider.start()
    elif settings.backend == BACKEND_MYSQL:
        from strata.storage.mysql import MySQLProvider

        mysql = settings.mysql
        password = resolve_mysql_password(settings, environ)
        if password is None:
            log.warning("mysql_password_env_unset", password_env=mysql.password_env)
        provider = MySQLProvider(
            host=mysql.host,
            port=mysql.port,
            database=mysql.database,
            username=mysql.username,
            password=password,
            min_pool_size=mysql.min_pool_size,
            max_pool_size=mysql.max_pool_size,
            connection_timeout=mysql.connection_timeout_seconds,
            idle_timeout=mysql.idle_timeout_seconds,
            max_lifetime=mysql.max_lifetime_seconds,
            charset=mysql.charset,
            logger=logger,
        )
        provider.start()
    else:
        raise ValueError(f"unsupported storage type {settings.backend!r}")

    log.info("storage_provider_opened", backend=provider.backend)
    return provider


__all__ = ["open_document_provider", "open_provider"]
