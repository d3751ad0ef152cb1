"""
Engine and session wiring for the credential database.

Services work on a session taken from ``session_factory``. The lock manager
is handed the factory itself, so every lease write commits on its own
connection outside the caller's transaction. In-memory SQLite gives each
connection a separate database, which would leave lease rows invisible to
other holders, so only file-backed SQLite is accepted.
"""

from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import URL, make_url
from sqlalchemy.exc import ArgumentError
from sqlalchemy.orm import sessionmaker

from ..config import DatabaseConfig, get_config
from ..exceptions import ErrorCode, ValidationError
from ..utils.logger import get_logger
from .db_base import Base

SUPPORTED_BACKENDS = ("postgresql", "sqlite")


def parse_database_url(connection_string: str) -> URL:
    """
    Parse and vet a connection string.

    Raises:
        ValidationError: Unparseable URL, unsupported backend or in-memory SQLite
    """
    try:
        url = make_url(connection_string)
    except ArgumentError:
        # The raw value may carry a password; neither it nor the parser message is kept
        raise ValidationError(
            "Invalid database URL", field="database_url", error_code=ErrorCode.INVALID_FORMAT
        ) from None

    backend = url.get_backend_name()
    if backend not in SUPPORTED_BACKENDS:
        raise ValidationError(
            f"Unsupported database backend: {backend}",
            field="database_url",
            error_code=ErrorCode.INVALID_FORMAT,
            backend=backend,
        )
    if backend == "sqlite" and url.database in (None, "", ":memory:"):
        raise ValidationError(
            "In-memory SQLite cannot hold lease rows shared between sessions; use a file",
            field="database_url",
            error_code=ErrorCode.INVALID_FORMAT,
        )
    return url


class DatabaseManager:
    """Owns the engine and the session factory shared by services and the lock manager."""

    def __init__(self, config: Optional[DatabaseConfig] = None):
        self.config = config or get_config().database
        self.url = parse_database_url(self.config.connection_string)
        self.engine = self._create_engine()
        self.session_factory = sessionmaker(bind=self.engine, expire_on_commit=False)
        get_logger().debug(
            "Database engine created",
            extra={"database_url": self.url.render_as_string(hide_password=True)},
        )

    @property
    def is_postgres(self) -> bool:
        return self.url.get_backend_name() == "postgresql"

    def _create_engine(self):
        if not self.is_postgres:
            # Lock sessions and replica threads share the file
            return create_engine(
                self.url, echo=self.config.echo, connect_args={"check_same_thread": False}
            )
        return create_engine(
            self.url,
            echo=self.config.echo,
            pool_size=self.config.pool_size,
            max_overflow=self.config.max_overflow,
            pool_timeout=self.config.pool_timeout,
            pool_pre_ping=True,
        )

    def create_tables(self) -> None:
        """Create the credential, rotation and lease tables (tests and development)."""
        import_all_models()
        Base.metadata.create_all(self.engine)

    def close(self) -> None:
        self.engine.dispose()


def import_all_models():
    """Import all models to ensure they're registered with SQLAlchemy metadata."""
    from sqlalchemy.orm import configure_mappers

    from .db_credential_models import RegistryCredential  # noqa
    from .db_lock_models import ClusterLock  # noqa
    from .db_rotation_models import RotationRequest  # noqa

    configure_mappers()
