from __future__ import annotations

import asyncio
import json
import uuid
from typing import Any, Callable, Dict, List, Mapping, Optional

import psycopg
from psycopg import sql
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from bookingdesk.logging import get_logger
from bookingdesk.storage.errors import StoreUnavailable
from bookingdesk.storage.models import Subscription

RecordCallback = Callable[[Dict[str, Any]], None]
StatusCallback = Callable[[str, Optional[str]], None]

# Tables the console is allowed to read and subscribe to
RECORD_TABLES = frozenset(
    {"bookings", "banners", "videos", "promos", "faqs", "testimonials"}
)

# Installs a row trigger publishing {"type", "record", "old_record"} on <table>_changes
NOTIFY_TRIGGER_SQL = """
CREATE OR REPLACE FUNCTION bookingdesk_notify_change() RETURNS trigger AS $$
BEGIN
  PERFORM pg_notify(
    TG_TABLE_NAME || '_changes',
    json_build_object(
      'type', TG_OP,
      'record', CASE WHEN TG_OP = 'DELETE' THEN NULL ELSE row_to_json(NEW) END,
      'old_record', CASE WHEN TG_OP = 'INSERT' THEN NULL ELSE json_build_object('id', OLD.id) END
    )::text
  );
  RETURN NULL;
END;
$$ LANGUAGE plpgsql;
"""


def _channel(table: str) -> str:
    return f"{table}_changes"


class PostgresRecordStore:
    """Postgres-backed record tables with LISTEN/NOTIFY change feeds.

    Snapshot queries use a pooled sync connection inside a worker thread;
    each subscription owns one autocommit async connection that LISTENs on
    ``<table>_changes`` until it is released.
    """

    def __init__(self, dsn: str, *, min_size: int = 1, max_size: int = 5) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": True},
            open=True,
        )
        self._listeners: Dict[str, asyncio.Task] = {}

    def _connect(self):
        return self.pool.connection()

    @staticmethod
    def _check_table(table: str) -> None:
        if table not in RECORD_TABLES:
            raise ValueError(f"unknown record table: {table}")

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1")

    def install_notify_trigger(self, table: str) -> None:
        self._check_table(table)
        trigger_name = sql.Identifier(f"{table}_notify_change")
        with self._connect() as conn:
            conn.execute(NOTIFY_TRIGGER_SQL)
            conn.execute(
                sql.SQL("DROP TRIGGER IF EXISTS {} ON {}").format(
                    trigger_name, sql.Identifier(table)
                )
            )
            conn.execute(
                sql.SQL(
                    "CREATE TRIGGER {} AFTER INSERT OR UPDATE OR DELETE ON {} "
                    "FOR EACH ROW EXECUTE FUNCTION bookingdesk_notify_change()"
                ).format(trigger_name, sql.Identifier(table))
            )
        self.logger.info("postgres_notify_trigger_installed", table=table)

    def _query_sync(
        self,
        table: str,
        filters: Optional[Mapping[str, Any]],
        order_by: Optional[str],
        descending: bool,
        limit: Optional[int],
    ) -> List[Dict[str, Any]]:
        query = sql.SQL("SELECT * FROM {}").format(sql.Identifier(table))
        params: List[Any] = []
        if filters:
            clauses = []
            for column, value in filters.items():
                clauses.append(sql.SQL("{} = %s").format(sql.Identifier(column)))
                params.append(value)
            query = query + sql.SQL(" WHERE ") + sql.SQL(" AND ").join(clauses)
        if order_by:
            direction = sql.SQL("DESC") if descending else sql.SQL("ASC")
            query = query + sql.SQL(" ORDER BY {} ").format(sql.Identifier(order_by)) + direction
        if limit is not None:
            query = query + sql.SQL(" LIMIT %s")
            params.append(int(limit))
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [dict(row) for row in rows]

    async def query(
        self,
        table: str,
        *,
        filters: Optional[Mapping[str, Any]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        self._check_table(table)
        try:
            return await asyncio.to_thread(
                self._query_sync, table, filters, order_by, descending, limit
            )
        except (psycopg.OperationalError, psycopg.InterfaceError) as exc:
            self.logger.error("postgres_query_failed", table=table, error=str(exc))
            raise StoreUnavailable(str(exc), backend="postgres") from exc

    def subscribe(
        self,
        table: str,
        on_insert: RecordCallback,
        on_update: RecordCallback,
        on_delete: RecordCallback,
        on_status: Optional[StatusCallback] = None,
    ) -> Subscription:
        """Start a LISTEN task; must be called from a running event loop."""
        self._check_table(table)
        handle = Subscription(id=str(uuid.uuid4()), table=table, _release=self.unsubscribe)
        loop = asyncio.get_running_loop()
        self._listeners[handle.id] = loop.create_task(
            self._listen(handle, on_insert, on_update, on_delete, on_status)
        )
        return handle

    def unsubscribe(self, subscription: Subscription) -> None:
        subscription.active = False
        task = self._listeners.pop(subscription.id, None)
        if task and not task.done():
            task.cancel()

    async def _listen(
        self,
        handle: Subscription,
        on_insert: RecordCallback,
        on_update: RecordCallback,
        on_delete: RecordCallback,
        on_status: Optional[StatusCallback],
    ) -> None:
        channel = _channel(handle.table)
        try:
            async with await psycopg.AsyncConnection.connect(
                self.dsn, autocommit=True
            ) as conn:
                await conn.execute(sql.SQL("LISTEN {}").format(sql.Identifier(channel)))
                if on_status:
                    on_status("SUBSCRIBED", None)
                async for notify in conn.notifies():
                    self._dispatch(notify.payload, on_insert, on_update, on_delete)
            if on_status and handle.active:
                on_status("CLOSED", "listen connection closed")
        except asyncio.CancelledError:
            raise
        except psycopg.Error as exc:
            self.logger.warning(
                "postgres_listen_failed", channel=channel, error=str(exc)
            )
            if on_status and handle.active:
                on_status("CHANNEL_ERROR", str(exc))
        finally:
            self._listeners.pop(handle.id, None)

    def _dispatch(
        self,
        payload: str,
        on_insert: RecordCallback,
        on_update: RecordCallback,
        on_delete: RecordCallback,
    ) -> None:
        try:
            message = json.loads(payload)
        except json.JSONDecodeError:
            self.logger.warning("postgres_notify_malformed", payload_size=len(payload))
            return
        kind = message.get("type")
        if kind == "INSERT" and message.get("record"):
            on_insert(message["record"])
        elif kind == "UPDATE" and message.get("record"):
            on_update(message["record"])
        elif kind == "DELETE" and message.get("old_record"):
            on_delete(message["old_record"])
        else:
            self.logger.debug("postgres_notify_ignored", kind=kind)

    async def close(self) -> None:
        for task in list(self._listeners.values()):
            task.cancel()
        self._listeners.clear()
        self.pool.close()
