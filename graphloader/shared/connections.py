# Async Neo4j driver lifecycle for load runs

from typing import Optional

from neo4j import AsyncDriver, AsyncGraphDatabase
from neo4j.exceptions import AuthError, DriverError, ServiceUnavailable

from graphloader.neo.errors import TransportError

from .config import Neo4jConfig, Settings
from .observability import get_logger

logger = get_logger(__name__)


class ConnectionManager:
    """Manages the async Neo4j driver for one load run"""

    def __init__(
        self,
        settings: Settings,
        neo4j_config: Optional[Neo4jConfig] = None,
        pool_size: int = 1,
    ):
        self.settings = settings
        self.neo4j_config = neo4j_config or Neo4jConfig()
        self.pool_size = pool_size
        self._neo4j_driver: Optional[AsyncDriver] = None

    @property
    def database(self) -> Optional[str]:
        return self.settings.neo4j_database or self.neo4j_config.database

    def _auth(self):
        if not self.settings.neo4j_password:
            return None
        return (self.settings.neo4j_user, self.settings.neo4j_password)

    async def get_neo4j_driver(self) -> AsyncDriver:
        """
        Get or create the Neo4j driver, verifying connectivity on creation.

        Raises:
            TransportError: If the server is unreachable or rejects credentials
        """
        if self._neo4j_driver is None:
            logger.info(
                "Initializing Neo4j driver",
                uri=self.settings.neo4j_uri,
                user=self.settings.neo4j_user,
                pool_size=self.pool_size,
            )
            driver = AsyncGraphDatabase.driver(
                self.settings.neo4j_uri,
                auth=self._auth(),
                max_connection_lifetime=self.neo4j_config.max_connection_lifetime,
                max_connection_pool_size=max(self.pool_size, 1),
                connection_acquisition_timeout=self.neo4j_config.connection_acquisition_timeout,
                connection_timeout=self.neo4j_config.connection_timeout,
            )
            try:
                await driver.verify_connectivity()
            except (ServiceUnavailable, AuthError, DriverError, OSError) as e:
                await driver.close()
                raise TransportError(
                    f"cannot connect to {self.settings.neo4j_uri}: {e}"
                ) from e
            self._neo4j_driver = driver
            logger.info("Neo4j driver initialized successfully")
        return self._neo4j_driver

    async def close_neo4j(self) -> None:
        """Close Neo4j driver"""
        if self._neo4j_driver:
            logger.info("Closing Neo4j driver")
            await self._neo4j_driver.close()
            self._neo4j_driver = None

    async def close_all(self) -> None:
        """Close all connections"""
        await self.close_neo4j()
