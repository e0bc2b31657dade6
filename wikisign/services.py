"""
Service wiring.

Builds the signature store, the host adapters and the signing components,
and hands them around as one ``Services`` bundle. The FastAPI app keeps the
bundle on ``app.state``; the management CLI builds its own.

Store selection is driven by environment variables:
- SIGNATURESTORE_DRIVER: Explicit driver selection (memory, psycopg2)
- DATABASE_URL or DATABASE_HOST: Database connection (auto-selects psycopg2)
- Neither set: in-memory store (development only)
"""

from dataclasses import dataclass, field
from typing import Optional

import psycopg2

from .config import SigningConfig
from .core import (
    AuthorizationResolver,
    ContentHasher,
    IdentityDirectory,
    InvalidationTrigger,
    PageStore,
    RevisionStore,
    SigningWorkflow,
)
from .db.config import DatabaseConfig, SignatureStoreDriver, get_database_config, get_store_driver
from .db.store import InMemorySignatureStore, PostgresSignatureStore, SignatureStore
from .host import InMemoryWiki
from .observability import ContextLogger, MetricsCollector, get_logger


@dataclass
class Services:
    """Everything a request needs, built once per process."""
    config: SigningConfig
    store: SignatureStore
    pages: PageStore
    revisions: RevisionStore
    directory: IdentityDirectory
    hasher: ContentHasher
    resolver: AuthorizationResolver
    workflow: SigningWorkflow
    trigger: InvalidationTrigger
    metrics: MetricsCollector = field(default_factory=MetricsCollector)


def create_signature_store(logger: Optional[ContextLogger] = None) -> SignatureStore:
    """
    Create the appropriate SignatureStore based on configuration.

    Returns:
        InMemorySignatureStore for development/testing
        PostgresSignatureStore when a database is configured
    """
    logger = logger or get_logger(__name__)
    driver = get_store_driver()

    if driver == SignatureStoreDriver.MEMORY:
        logger.info("Using in-memory signature store (no persistence)")
        return InMemorySignatureStore(logger=get_logger("wikisign.db.store"))

    db_config = get_database_config()
    if db_config is None:
        logger.warning(
            "Driver requires a database but none is configured, using in-memory store",
            driver=driver.value,
        )
        return InMemorySignatureStore(logger=get_logger("wikisign.db.store"))

    return create_postgres_store(db_config, logger)


def create_postgres_store(
    db_config: DatabaseConfig,
    logger: Optional[ContextLogger] = None,
) -> PostgresSignatureStore:
    """Create a PostgresSignatureStore, checking the connection once up front."""
    logger = logger or get_logger(__name__)

    def connection_factory():
        return psycopg2.connect(db_config.to_dsn())

    test_conn = connection_factory()
    test_conn.close()

    logger.info(
        "PostgreSQL connection established",
        database=db_config.to_url(include_password=False),
    )
    return PostgresSignatureStore(
        connection_factory,
        lock_timeout_ms=db_config.lock_timeout_ms,
        statement_timeout_ms=db_config.statement_timeout_ms,
        logger=get_logger("wikisign.db.store"),
    )


def build_services(
    config: Optional[SigningConfig] = None,
    store: Optional[SignatureStore] = None,
    wiki: Optional[InMemoryWiki] = None,
    metrics: Optional[MetricsCollector] = None,
) -> Services:
    """
    Wire the signing components.

    Without an explicit host, an empty InMemoryWiki stands in for the wiki
    and its save events are routed to the invalidation trigger.
    """
    config = config or SigningConfig.from_env()
    store = store or create_signature_store()
    metrics = metrics or MetricsCollector()

    if wiki is None:
        wiki = InMemoryWiki()

    hasher = ContentHasher(wiki, logger=get_logger("wikisign.core.hasher"))
    resolver = AuthorizationResolver(default_role=config.default_role)
    workflow = SigningWorkflow(
        pages=wiki,
        hasher=hasher,
        resolver=resolver,
        store=store,
        logger=get_logger("wikisign.core.workflow"),
        metrics=metrics,
    )
    trigger = InvalidationTrigger(
        store=store,
        pages=wiki,
        logger=get_logger("wikisign.core.invalidation"),
        metrics=metrics,
    )
    wiki.on_save(trigger.on_content_changed)

    return Services(
        config=config,
        store=store,
        pages=wiki,
        revisions=wiki,
        directory=wiki,
        hasher=hasher,
        resolver=resolver,
        workflow=workflow,
        trigger=trigger,
        metrics=metrics,
    )
