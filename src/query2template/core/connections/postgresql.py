"""
PostgreSQL connection configuration
"""

from typing import Any, Dict, Optional, Tuple, List
from dataclasses import dataclass, field
import asyncio
import socket

import asyncpg

SSL_MODES = ("disable", "allow", "prefer", "require", "verify-ca", "verify-full")

# Pool sizing keys live in extra_params but are not libpq URL parameters
POOL_PARAMS = ("min_pool_size", "max_pool_size", "command_timeout")


@dataclass
class PostgreSQLConfig:
    """PostgreSQL connection configuration for the template and funnel stores"""

    database_name: str
    timeout: int = 30
    extra_params: Dict[str, Any] = field(default_factory=dict)
    # Optional DSN/connection string. When provided, it will be used directly.
    connection_string: Optional[str] = None
    host: str = "localhost"
    port: int = 5432
    username: str = ""
    password: str = ""
    schema: Optional[str] = "public"
    ssl_mode: str = "disable"  # disable, allow, prefer, require, verify-ca, verify-full

    def to_connection_string(self) -> str:
        """Generate PostgreSQL connection string"""
        if self.connection_string:
            return self.connection_string

        conn_str = f"postgresql://{self.username}"
        if self.password:
            conn_str += f":{self.password}"
        conn_str += f"@{self.host}:{self.port}/{self.database_name}"

        params: List[str] = [f"sslmode={self.ssl_mode}"]
        for key, value in self.extra_params.items():
            if key in POOL_PARAMS:
                continue
            params.append(f"{key}={value}")

        return conn_str + "?" + "&".join(params)

    def validate(self) -> bool:
        """Validate PostgreSQL configuration"""
        if self.connection_string:
            return isinstance(self.connection_string, str) and len(self.connection_string.strip()) > 0
        if not self.host or not self.database_name:
            return False
        if not 1 <= int(self.port) <= 65535:
            return False
        if self.ssl_mode not in SSL_MODES:
            return False
        return True

    async def test_connection(self) -> Tuple[bool, str]:
        """Connect once with asyncpg and report the server version and schema presence"""
        if not self.validate():
            return False, "Invalid PostgreSQL configuration"

        if not self.connection_string:
            reachable, reason = await self.probe_server()
            if not reachable:
                return False, f"PostgreSQL connection failed: {reason}"

        try:
            conn = await asyncio.wait_for(
                asyncpg.connect(self.to_connection_string()),
                timeout=self.timeout,
            )
        except (asyncio.TimeoutError, OSError, asyncpg.PostgresError) as e:
            return False, f"PostgreSQL database connection failed: {str(e)}"

        try:
            version = await conn.fetchval("SELECT version();")
            schema_msg = ""
            if self.schema and self.schema != "public":
                schema_exists = await conn.fetchval(
                    "SELECT EXISTS(SELECT 1 FROM information_schema.schemata WHERE schema_name = $1);",
                    self.schema,
                )
                if not schema_exists:
                    return False, f"PostgreSQL connection successful but schema '{self.schema}' does not exist."
                schema_msg = f" Schema '{self.schema}' exists."
            return True, f"PostgreSQL connection successful. Server version: {version[:50]}...{schema_msg}"
        except asyncpg.PostgresError as e:
            return False, f"PostgreSQL database connection failed: {str(e)}"
        finally:
            await conn.close()

    async def probe_server(self) -> Tuple[bool, str]:
        """Open and close a bare TCP socket to host:port before the asyncpg handshake"""
        target = f"{self.host}:{self.port}"
        try:
            _, writer = await asyncio.wait_for(
                asyncio.open_connection(self.host, int(self.port)),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            return False, f"no answer from {target} within {self.timeout}s"
        except ConnectionRefusedError:
            return False, f"{target} refused the connection"
        except socket.gaierror as e:
            return False, f"cannot resolve host '{self.host}': {e}"
        except OSError as e:
            return False, f"{target} is unreachable: {e}"

        writer.close()
        await writer.wait_closed()
        return True, f"{target} is accepting connections"
