from typing import Optional

from .environment import (
    DATABASE_URL,
    POSTGRES_HOST,
    POSTGRES_PORT,
    POSTGRES_DATABASE,
    POSTGRES_USER,
    POSTGRES_PASSWORD,
    POSTGRES_SSLMODE,
)


class ConnectionConfig:
    """
    Connection configuration for Postgres.

    This is an intermediary because it allows us to easily modify the vars in tests.
    """

    url: Optional[str] = DATABASE_URL
    host: str = POSTGRES_HOST
    port: str | int = POSTGRES_PORT
    database: str = POSTGRES_DATABASE
    user: str = POSTGRES_USER
    password: str = POSTGRES_PASSWORD

    def __init__(self) -> None:
        """Non-instantiable class has a lower chance of being printed."""
        raise NotImplementedError("Cannot instantiate ConnectionConfig.")

    @classmethod
    def to_connection_string(cls, protocol: str = "postgresql") -> str:
        """Format config as a URL connection string."""
        if cls.url:
            return cls.url
        return f"{protocol}://{cls.user}:{cls.password}@{cls.host}:{cls.port}/{cls.database}?sslmode={POSTGRES_SSLMODE}"
