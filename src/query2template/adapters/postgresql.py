"""Async PostgreSQL adapter built on asyncpg."""

from __future__ import annotations

import re
import json
import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import date, datetime, time
from decimal import Decimal
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional, Sequence, Tuple

import asyncpg

from ..core.connections.postgresql import POOL_PARAMS, PostgreSQLConfig
from ..utils.helpers import get_logger

APPLICATION_NAME = "query2template"
DEFAULT_MIN_POOL_SIZE = 1
DEFAULT_MAX_POOL_SIZE = 5

_ROW_COMMANDS = ("SELECT", "WITH", "SHOW", "EXPLAIN", "VALUES")
_SELECT_RE = re.compile(r"\bSELECT\b", re.IGNORECASE)
_LIMIT_RE = re.compile(r"\bLIMIT\s+\d+", re.IGNORECASE)
_RETURNING_RE = re.compile(r"\bRETURNING\b", re.IGNORECASE)


class PostgreSQLAdapter:
    """Pooled asyncpg access for the template and funnel stores.

    Three ways in:
        - sql_execution(): one statement, structured dict response, never raises
        - connection(): scoped connection checkout
        - transaction(): scoped checkout with explicit start/commit/rollback
    """

    # ============================================================================
    # 1. Initialization
    # ============================================================================

    def __init__(self, config: PostgreSQLConfig):
        self.config = config
        self.logger: logging.Logger = get_logger("query2template.adapters.postgresql")
        self._pool: Optional[asyncpg.Pool] = None
        self._pool_lock: Optional[asyncio.Lock] = None

    # ============================================================================
    # 2. Public API
    # ============================================================================

    async def sql_execution(
        self,
        sql_command: str,
        params: Optional[Sequence[Any]] = None,
        safe: bool = True,
        limit: Optional[int] = 100,
    ) -> Dict[str, Any]:
        """Run one statement and report the outcome as a dict; never raises.

        With safe=True the statement must pass the template safety rules
        (no write/DDL/procedure keywords) and gets a row LIMIT.

        Returns:
            {"success": True, "columns", "result", "sql_command", "ori_sql_command", "metadata"}
            or {"success": False, "error", "sql_command"}
        """
        if not isinstance(sql_command, str) or not sql_command.strip():
            return _failed(sql_command, "SQL command must be a non-empty string")

        statement = sql_command.strip()
        if safe:
            from ..core.template_matching.validator import validate_safety

            safety = validate_safety(statement)
            if not safety.valid:
                return _failed(sql_command, "; ".join(issue.message for issue in safety.errors))
            statement = self._apply_limit(statement, limit)

        try:
            args = self._normalize_params(params)
            pool = await self._get_pool()
        except TypeError as e:
            return _failed(sql_command, str(e))
        except (OSError, asyncio.TimeoutError, asyncpg.PostgresError) as e:
            self.logger.error("Could not open PostgreSQL pool: %s", e)
            return _failed(sql_command, str(e))

        try:
            async with pool.acquire() as conn:
                columns, rows, metadata = await self._run_statement(conn, statement, args)
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
            self.logger.error("Statement failed: %s", e)
            response = _failed(statement, str(e))
            response["ori_sql_command"] = sql_command
            return response

        return {
            "success": True,
            "columns": columns,
            "result": rows,
            "sql_command": statement,
            "ori_sql_command": sql_command,
            "metadata": metadata,
        }

    async def _run_statement(
        self, conn: asyncpg.Connection, statement: str, args: Tuple[Any, ...]
    ) -> Tuple[List[str], List[List[Any]], Dict[str, Any]]:
        """fetch() for row-returning statements, execute() for the rest"""
        if self._returns_rows(statement):
            records = await conn.fetch(statement, *args)
            columns = list(records[0].keys()) if records else []
            rows = [self._convert_record(record) for record in records]
            return columns, rows, {"rows_returned": len(rows)}

        status = await conn.execute(statement, *args)
        return [], [], {"rows_affected": self._parse_status_rows(status), "status": status}

    @asynccontextmanager
    async def connection(self) -> AsyncIterator[asyncpg.Connection]:
        """Check out one pooled connection for the duration of the block"""
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            yield conn

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[asyncpg.Connection]:
        """Run the block inside one transaction; roll back on any exception and re-raise"""
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            tx = conn.transaction()
            await tx.start()
            try:
                yield conn
            except BaseException:
                await tx.rollback()
                raise
            else:
                await tx.commit()

    # ============================================================================
    # 3. Connection pool
    # ============================================================================

    async def close_pool(self) -> None:
        if self._pool is not None:
            pool, self._pool = self._pool, None
            await pool.close()
            self.logger.debug("PostgreSQL pool closed")

    async def _get_pool(self) -> asyncpg.Pool:
        """Create the pool on first use; concurrent first callers share one pool"""
        if self._pool is None:
            if self._pool_lock is None:
                self._pool_lock = asyncio.Lock()
            async with self._pool_lock:
                if self._pool is None:
                    self._pool = await asyncpg.create_pool(**self._build_pool_kwargs())
        return self._pool

    def _build_pool_kwargs(self) -> Dict[str, Any]:
        """asyncpg.create_pool() arguments derived from the PostgreSQLConfig"""
        cfg = self.config
        if not isinstance(cfg, PostgreSQLConfig):
            raise RuntimeError("PostgreSQLAdapter requires a PostgreSQLConfig")

        extra = cfg.extra_params
        min_size = int(extra.get("min_pool_size", DEFAULT_MIN_POOL_SIZE))
        settings = {"application_name": APPLICATION_NAME}
        if cfg.schema and cfg.schema != "public":
            settings["search_path"] = f"{cfg.schema}, public"

        kwargs: Dict[str, Any] = {
            "min_size": min_size,
            "max_size": int(extra.get("max_pool_size", max(min_size, DEFAULT_MAX_POOL_SIZE))),
            "timeout": cfg.timeout,
            "command_timeout": float(extra.get("command_timeout", cfg.timeout)),
            "server_settings": settings,
        }

        if cfg.connection_string:
            kwargs["dsn"] = cfg.connection_string
        else:
            kwargs.update(
                host=cfg.host,
                port=cfg.port,
                user=cfg.username or None,
                password=cfg.password or None,
                database=cfg.database_name,
                ssl=cfg.ssl_mode not in ("disable", "allow"),
            )

        # Remaining extras are passed straight to asyncpg.connect()
        for key, value in extra.items():
            if key not in POOL_PARAMS:
                kwargs.setdefault(key, value)
        return kwargs

    # ============================================================================
    # 4. Statement helpers
    # ============================================================================

    def _apply_limit(self, statement: str, limit: Optional[int]) -> str:
        """Cap a SELECT at `limit` rows, replacing any LIMIT it already has"""
        if not limit or limit <= 0 or not _SELECT_RE.search(statement):
            return statement
        if _LIMIT_RE.search(statement):
            return _LIMIT_RE.sub(f"LIMIT {limit}", statement)
        return f"{statement.rstrip().rstrip(';')} LIMIT {limit};"

    def _normalize_params(self, params: Optional[Sequence[Any]]) -> Tuple[Any, ...]:
        """asyncpg takes positional $n arguments only"""
        if params is None:
            return ()
        if isinstance(params, Mapping):
            raise TypeError("PostgreSQLAdapter sql_execution only supports positional parameters")
        if isinstance(params, (str, bytes, bytearray)) or not isinstance(params, Sequence):
            return (params,)
        return tuple(params)

    def _returns_rows(self, statement: str) -> bool:
        words = statement.split(None, 1)
        first = words[0].upper() if words else ""
        return first in _ROW_COMMANDS or bool(_RETURNING_RE.search(statement))

    def _parse_status_rows(self, status: str) -> Optional[int]:
        """Row count from a command tag ("DELETE 3" -> 3)"""
        count = status.rsplit(None, 1)[-1] if status else ""
        return int(count) if count.isdigit() and " " in status.strip() else None

    # ============================================================================
    # 5. Value conversion
    # ============================================================================

    def _convert_record(self, record) -> List[Any]:
        return [self._convert_value(value) for value in record.values()]

    def record_to_dict(self, record) -> Dict[str, Any]:
        """Column-name keyed, JSON-friendly copy of an asyncpg Record"""
        return dict(zip(record.keys(), self._convert_record(record)))

    def rows_to_dicts(self, response: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Turn a successful sql_execution response into a list of row dicts"""
        columns = response.get("columns", [])
        return [dict(zip(columns, row)) for row in response.get("result", [])]

    def _convert_value(self, value: Any) -> Any:
        """JSON-friendly rendering of a column value"""
        if value is None or isinstance(value, (bool, int, float, str)):
            return value
        if isinstance(value, Decimal):
            return float(value)
        if isinstance(value, (datetime, date, time)):
            return value.isoformat()
        if isinstance(value, (bytes, bytearray)):
            return value.decode("utf-8", errors="ignore")
        if isinstance(value, (list, tuple)):
            return [self._convert_value(item) for item in value]
        if isinstance(value, dict):
            return json.dumps(value, default=str)
        return str(value)


def _failed(sql_command: Any, error: str) -> Dict[str, Any]:
    return {"success": False, "error": error, "sql_command": sql_command}
