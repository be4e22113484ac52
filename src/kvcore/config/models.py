# src/kvcore/config/models.py
"""
Pydantic models for kvcore store configuration.

Each backend gets one explicit model. Options that belong to the underlying
driver travel in a single ``driver_options`` bag which is checked against a
per-backend allow-list, so a misspelt adapter option is rejected instead of
being silently forwarded to the driver.

Usage:
    config = PostgresConfig(uri="postgresql://localhost/app", namespace="sessions")
    store = PostgresStore(config)

    # Equivalent keyword form
    store = PostgresStore(uri="postgresql://localhost/app", namespace="sessions")
"""

from collections.abc import Mapping
from typing import Any, ClassVar, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from ..exceptions import ConfigError

DEFAULT_TABLE = "keyv"
DEFAULT_ITERATION_LIMIT = 10


class StoreConfig(BaseModel):
    """
    Options shared by every store.

    Attributes:
        uri: Connection URI of the backend.
        namespace: Logical partition; ``None`` and ``""`` both mean the default namespace.
        iteration_limit: Page size used by ``iterator()``; 0 falls back to the default.
        reap_interval: Seconds between application-level ``clear_expired()`` runs (0 disables).
        driver_options: Extra keyword options forwarded to the driver (allow-listed).
    """

    model_config = ConfigDict(extra="forbid", validate_assignment=True)

    dialect: ClassVar[str] = "base"
    allowed_driver_options: ClassVar[frozenset[str]] = frozenset()

    uri: str
    namespace: str | None = None
    iteration_limit: int = Field(DEFAULT_ITERATION_LIMIT, ge=0)
    reap_interval: float = Field(0, ge=0)
    driver_options: dict[str, Any] = Field(default_factory=dict)

    @field_validator("driver_options")
    @classmethod
    def check_driver_options(cls, v: dict[str, Any]) -> dict[str, Any]:
        """Reject driver options that are not on the backend's allow-list."""
        unknown = sorted(set(v) - cls.allowed_driver_options)
        if unknown:
            raise ValueError(
                f"Unsupported {cls.dialect} driver option(s): {unknown}. "
                f"Allowed: {sorted(cls.allowed_driver_options)}"
            )
        return v

    @property
    def effective_iteration_limit(self) -> int:
        return self.iteration_limit or DEFAULT_ITERATION_LIMIT

    @classmethod
    def from_options(cls, config: Any = None, **options: Any) -> "StoreConfig":
        """
        Build a config from a model instance, a URI string or a mapping.

        Keyword options override whatever ``config`` provides.

        Raises:
            ConfigError: If the options do not validate.
        """
        if isinstance(config, cls):
            if not options:
                return config.model_copy(deep=True)
            merged = {**config.model_dump(), **options}
        elif isinstance(config, str):
            merged = {"uri": config, **options}
        elif isinstance(config, Mapping):
            merged = {**config, **options}
        elif config is None:
            merged = dict(options)
        else:
            raise ConfigError(
                f"Unsupported {cls.dialect} configuration type: {type(config).__name__}"
            )

        try:
            return cls(**merged)
        except ValidationError as e:
            raise ConfigError(f"Invalid {cls.dialect} store configuration: {e}") from e

    def pool_options(self) -> dict[str, Any]:
        """Options that identify a shared pool together with the URI."""
        return dict(self.driver_options)

    def to_opts(self) -> dict[str, Any]:
        """Loose dict projection kept for callers that expect an ``opts`` bag."""
        opts = self.model_dump(exclude={"driver_options"})
        opts["dialect"] = self.dialect
        opts.update(self.driver_options)
        return opts


class SqlStoreConfig(StoreConfig):
    """Options shared by the relational stores."""

    table: str = Field(DEFAULT_TABLE, min_length=1)
    key_length: int = Field(255, gt=0)
    namespace_length: int = Field(255, gt=0)


class PostgresConfig(SqlStoreConfig):
    """PostgreSQL store configuration (psycopg + psycopg_pool)."""

    dialect: ClassVar[str] = "postgres"
    # Keys understood by AsyncConnectionPool itself; everything else is a
    # libpq connection parameter.
    pool_keys: ClassVar[frozenset[str]] = frozenset(
        {"timeout", "max_idle", "max_lifetime", "max_waiting", "reconnect_timeout", "num_workers", "name"}
    )
    allowed_driver_options: ClassVar[frozenset[str]] = pool_keys | frozenset(
        {
            "application_name",
            "connect_timeout",
            "keepalives",
            "keepalives_idle",
            "options",
            "password",
            "prepare_threshold",
            "sslcert",
            "sslkey",
            "sslmode",
            "sslrootcert",
            "target_session_attrs",
            "user",
        }
    )

    uri: str = "postgresql://localhost:5432"
    schema_name: str = Field("public", min_length=1)
    ssl: bool | dict[str, Any] | None = None
    use_unlogged_table: bool = False
    min_pool_size: int = Field(1, ge=0)
    max_pool_size: int = Field(10, gt=0)

    @model_validator(mode="after")
    def check_pool_sizes(self) -> "PostgresConfig":
        if self.min_pool_size > self.max_pool_size:
            raise ValueError("min_pool_size cannot exceed max_pool_size")
        return self

    def pool_options(self) -> dict[str, Any]:
        options = super().pool_options()
        options.update(min_size=self.min_pool_size, max_size=self.max_pool_size, ssl=self.ssl)
        return options


class MysqlConfig(SqlStoreConfig):
    """MySQL store configuration (aiomysql)."""

    dialect: ClassVar[str] = "mysql"
    allowed_driver_options: ClassVar[frozenset[str]] = frozenset(
        {
            "charset",
            "connect_timeout",
            "init_command",
            "local_infile",
            "maxsize",
            "minsize",
            "pool_recycle",
            "program_name",
            "read_default_file",
            "server_public_key",
            "sql_mode",
            "ssl",
            "unix_socket",
        }
    )

    uri: str = "mysql://localhost"
    interval_expiration: int | None = Field(None, ge=0)

    def to_opts(self) -> dict[str, Any]:
        opts = super().to_opts()
        opts["url"] = self.uri
        return opts


def sqlite_database(uri: str) -> str:
    """Path part of ``sqlite:///path/to/file.db``; ``sqlite://:memory:`` and a bare ``sqlite://`` give ``:memory:``."""
    for prefix in ("sqlite:///", "sqlite://"):
        if uri.startswith(prefix):
            return uri[len(prefix):] or ":memory:"
    return uri


class SqliteConfig(SqlStoreConfig):
    """SQLite store configuration (aiosqlite)."""

    dialect: ClassVar[str] = "sqlite"
    allowed_driver_options: ClassVar[frozenset[str]] = frozenset(
        {"cached_statements", "detect_types", "timeout"}
    )

    uri: str = "sqlite://:memory:"
    busy_timeout: int = Field(5000, ge=0)

    @property
    def database(self) -> str:
        """Filesystem path (or ``:memory:``) encoded in the URI."""
        return sqlite_database(self.uri)

    def pool_options(self) -> dict[str, Any]:
        options = super().pool_options()
        options["busy_timeout"] = self.busy_timeout
        return options


class MongoConfig(StoreConfig):
    """MongoDB store configuration (PyMongo async API)."""

    dialect: ClassVar[str] = "mongo"
    allowed_driver_options: ClassVar[frozenset[str]] = frozenset(
        {
            "appname",
            "authMechanism",
            "authSource",
            "compressors",
            "connectTimeoutMS",
            "directConnection",
            "maxPoolSize",
            "minPoolSize",
            "password",
            "readConcernLevel",
            "replicaSet",
            "retryReads",
            "retryWrites",
            "serverSelectionTimeoutMS",
            "socketTimeoutMS",
            "tls",
            "tlsAllowInvalidCertificates",
            "tlsCAFile",
            "username",
            "w",
        }
    )

    uri: str = "mongodb://127.0.0.1:27017"
    collection: str = Field(DEFAULT_TABLE, min_length=1)
    db: str | None = None
    use_gridfs: bool = False
    read_preference: Literal["primary", "primaryPreferred", "secondary", "secondaryPreferred", "nearest"] | None = None

    @model_validator(mode="before")
    @classmethod
    def accept_url_alias(cls, data: Any) -> Any:
        """``url`` is accepted as a synonym of ``uri``."""
        if isinstance(data, Mapping) and "url" in data:
            data = dict(data)
            url = data.pop("url")
            data.setdefault("uri", url)
        return data

    def to_opts(self) -> dict[str, Any]:
        opts = super().to_opts()
        opts["url"] = self.uri
        return opts


CONFIG_MODELS: dict[str, type[StoreConfig]] = {
    "postgres": PostgresConfig,
    "mysql": MysqlConfig,
    "sqlite": SqliteConfig,
    "mongo": MongoConfig,
}
