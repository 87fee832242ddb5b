"""
Mock record store for engagement core tests.

Serves the PostgREST subset the client speaks, backed by aiosqlite:
- eq / in / is.null filters, select, order
- the unique constraints and cascades of the real schema (409 / 23505)
- owner checks on writes (403 / 42501); unknown tokens get 401
- fault injection per (method, table), a write gate, and a call log
"""

import asyncio
import json
import sqlite3
import uuid
from collections import defaultdict, deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import aiosqlite
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response

API_KEY = "test-project-key"

SCHEMA = """
    CREATE TABLE user_favorites (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id TEXT NOT NULL,
        location_id TEXT NOT NULL,
        created_at TEXT,
        UNIQUE (user_id, location_id)
    );
    CREATE TABLE favorite_lists (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        name TEXT NOT NULL,
        description TEXT,
        created_at TEXT NOT NULL
    );
    CREATE TABLE favorite_list_items (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        list_id TEXT NOT NULL REFERENCES favorite_lists (id) ON DELETE CASCADE,
        location_id TEXT NOT NULL,
        created_at TEXT,
        UNIQUE (list_id, location_id)
    );
    CREATE TABLE event_rsvps (
        id TEXT PRIMARY KEY,
        event_id TEXT NOT NULL,
        user_id TEXT NOT NULL,
        status TEXT NOT NULL CHECK (status IN ('going', 'interested')),
        created_at TEXT,
        UNIQUE (event_id, user_id)
    );
    CREATE TABLE article_likes (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        article_id TEXT NOT NULL,
        user_id TEXT NOT NULL,
        created_at TEXT,
        UNIQUE (article_id, user_id)
    );
    CREATE TABLE user_roles (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id TEXT NOT NULL,
        role TEXT NOT NULL
    );
    CREATE TABLE profiles (
        id TEXT PRIMARY KEY,
        account_type TEXT,
        subscription_status TEXT,
        subscription_end_date TEXT
    );
"""

OWNER_COLUMN = {
    "user_favorites": "user_id",
    "favorite_lists": "user_id",
    "event_rsvps": "user_id",
    "article_likes": "user_id",
}
GENERATED_IDS = {"favorite_lists", "event_rsvps"}
READ_ONLY = {"user_roles", "profiles"}


@dataclass
class Call:
    method: str
    table: str
    params: dict[str, str]
    body: Any = None


class StoreError(Exception):
    def __init__(self, status: int, code: str | None, message: str):
        super().__init__(message)
        self.status = status
        self.code = code
        self.message = message


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class MockStore:
    def __init__(self, db_path: str = ":memory:"):
        self.db_path = db_path
        self.db: aiosqlite.Connection | None = None
        self.tokens: dict[str, str] = {}
        self.calls: list[Call] = []
        self.gate: asyncio.Event | None = None
        self._failures: dict[tuple[str, str], deque] = defaultdict(deque)
        self._columns: dict[str, list[str]] = {}

    async def open(self) -> None:
        self.db = await aiosqlite.connect(self.db_path)
        self.db.row_factory = aiosqlite.Row
        await self.db.execute("PRAGMA foreign_keys = ON")
        await self.db.executescript(SCHEMA)
        await self.db.commit()
        tables = await self.db.execute_fetchall(
            "SELECT name FROM sqlite_master WHERE type = 'table' AND name NOT LIKE 'sqlite_%'"
        )
        for table in tables:
            info = await self.db.execute_fetchall(f"PRAGMA table_info({table['name']})")
            self._columns[table["name"]] = [col["name"] for col in info]

    async def close(self) -> None:
        if self.db:
            await self.db.close()
            self.db = None

    # ── Test helpers ──

    def add_user(self, user_id: str, token: str | None = None) -> str:
        token = token or f"token-{user_id}"
        self.tokens[token] = user_id
        return token

    async def seed(self, table: str, **row: Any) -> None:
        assert self.db
        columns = ", ".join(row)
        marks = ", ".join("?" for _ in row)
        await self.db.execute(
            f"INSERT INTO {table} ({columns}) VALUES ({marks})", tuple(row.values())
        )
        await self.db.commit()

    async def rows(self, table: str, **where: Any) -> list[dict]:
        assert self.db
        sql = f"SELECT * FROM {table}"
        if where:
            sql += " WHERE " + " AND ".join(f"{col} = ?" for col in where)
        return [dict(r) for r in await self.db.execute_fetchall(sql, tuple(where.values()))]

    def fail_next(
        self,
        method: str,
        table: str,
        status: int = 503,
        code: str | None = None,
        message: str = "injected failure",
    ) -> None:
        self._failures[(method.upper(), table)].append((status, code, message))

    def calls_to(self, method: str | None = None, table: str | None = None) -> list[Call]:
        return [
            call
            for call in self.calls
            if (method is None or call.method == method) and (table is None or call.table == table)
        ]

    def writes(self) -> list[Call]:
        return [call for call in self.calls if call.method != "GET"]

    # ── Request handling ──

    async def handle(self, request: Request, table: str) -> Response:
        method = request.method
        params = list(request.query_params.multi_items())
        body = None
        if method in ("POST", "PATCH"):
            body = json.loads(await request.body() or b"null")
        self.calls.append(Call(method, table, dict(params), body))

        try:
            if table not in self._columns:
                raise StoreError(404, "42P01", f'relation "{table}" does not exist')
            caller = self._caller(request)
            if method != "GET" and self.gate is not None:
                await self.gate.wait()
            failures = self._failures.get((method, table))
            if failures:
                status, code, message = failures.popleft()
                raise StoreError(status, code, message)

            if method == "GET":
                return JSONResponse(await self._select(table, params))
            if caller is None:
                raise StoreError(401, "42501", "permission denied for anonymous role")
            if table in READ_ONLY:
                raise StoreError(403, "42501", f"permission denied for table {table}")
            if method == "POST":
                return JSONResponse(await self._insert(table, body, caller), status_code=201)
            if method == "PATCH":
                return JSONResponse(await self._update(table, params, body, caller))
            await self._delete(table, params, caller)
            return Response(status_code=204)
        except StoreError as exc:
            return JSONResponse({"code": exc.code, "message": exc.message}, status_code=exc.status)

    def _caller(self, request: Request) -> str | None:
        if request.headers.get("apikey") != API_KEY:
            raise StoreError(401, None, "Invalid API key")
        auth = request.headers.get("authorization", "")
        token = auth[len("Bearer "):] if auth.startswith("Bearer ") else ""
        if token in self.tokens:
            return self.tokens[token]
        if token == API_KEY:
            return None
        raise StoreError(401, "PGRST301", "JWT expired")

    def _check_column(self, table: str, column: str) -> None:
        if column not in self._columns[table]:
            raise StoreError(400, "42703", f'column {table}.{column} does not exist')

    def _where(self, table: str, params: list[tuple[str, str]]) -> tuple[list[str], list[Any]]:
        clauses: list[str] = []
        args: list[Any] = []
        for column, expr in params:
            if column in ("select", "order"):
                continue
            self._check_column(table, column)
            op, _, value = expr.partition(".")
            if op == "eq":
                clauses.append(f"{column} = ?")
                args.append(value)
            elif op == "in":
                inner = value.strip("()")
                values = inner.split(",") if inner else []
                clauses.append(f"{column} IN ({', '.join('?' for _ in values)})")
                args.extend(values)
            elif op == "is" and value == "null":
                clauses.append(f"{column} IS NULL")
            else:
                raise StoreError(400, "PGRST100", f"unsupported filter: {column}={expr}")
        return clauses, args

    def _owned(self, table: str, caller: str) -> tuple[str, list[Any]]:
        if table == "favorite_list_items":
            return "list_id IN (SELECT id FROM favorite_lists WHERE user_id = ?)", [caller]
        return f"{OWNER_COLUMN[table]} = ?", [caller]

    @staticmethod
    def _integrity_error(exc: sqlite3.IntegrityError) -> StoreError:
        message = str(exc)
        if "UNIQUE" in message:
            return StoreError(409, "23505", "duplicate key value violates unique constraint")
        if "FOREIGN KEY" in message:
            return StoreError(409, "23503", "insert or update violates foreign key constraint")
        if "CHECK" in message:
            return StoreError(400, "23514", "new row violates check constraint")
        return StoreError(400, "23502", message)

    async def _select(self, table: str, params: list[tuple[str, str]]) -> list[dict]:
        assert self.db
        options = dict(params)
        columns = options.get("select", "*")
        if columns != "*":
            for column in columns.split(","):
                self._check_column(table, column)
        sql = f"SELECT {columns} FROM {table}"
        clauses, args = self._where(table, params)
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        if "order" in options:
            column, _, direction = options["order"].partition(".")
            self._check_column(table, column)
            sql += f" ORDER BY {column} {'DESC' if direction == 'desc' else 'ASC'}, rowid"
        rows = await self.db.execute_fetchall(sql, args)
        return [dict(r) for r in rows]

    async def _insert(self, table: str, body: Any, caller: str) -> list[dict]:
        assert self.db
        if not isinstance(body, dict) or not body:
            raise StoreError(400, "PGRST102", "expected a JSON object")
        row = dict(body)
        for column in row:
            self._check_column(table, column)
        if table in OWNER_COLUMN and row.get(OWNER_COLUMN[table]) != caller:
            raise StoreError(403, "42501", "new row violates row-level security policy")
        if table == "favorite_list_items":
            owners = await self.db.execute_fetchall(
                "SELECT user_id FROM favorite_lists WHERE id = ?", (row.get("list_id"),)
            )
            if not owners or owners[0]["user_id"] != caller:
                raise StoreError(403, "42501", "new row violates row-level security policy")
        if table in GENERATED_IDS:
            row.setdefault("id", str(uuid.uuid4()))
        if "created_at" in self._columns[table]:
            row.setdefault("created_at", _now())

        columns = ", ".join(row)
        marks = ", ".join("?" for _ in row)
        try:
            cursor = await self.db.execute(
                f"INSERT INTO {table} ({columns}) VALUES ({marks})", tuple(row.values())
            )
            await self.db.commit()
        except sqlite3.IntegrityError as exc:
            await self.db.rollback()
            raise self._integrity_error(exc) from exc
        created = await self.db.execute_fetchall(
            f"SELECT * FROM {table} WHERE rowid = ?", (cursor.lastrowid,)
        )
        return [dict(r) for r in created]

    async def _target_rowids(
        self, table: str, params: list[tuple[str, str]], caller: str
    ) -> list[int]:
        assert self.db
        clauses, args = self._where(table, params)
        owned, owned_args = self._owned(table, caller)
        clauses.append(owned)
        args.extend(owned_args)
        rows = await self.db.execute_fetchall(
            f"SELECT rowid FROM {table} WHERE {' AND '.join(clauses)}", args
        )
        return [r[0] for r in rows]

    async def _update(
        self, table: str, params: list[tuple[str, str]], body: Any, caller: str
    ) -> list[dict]:
        assert self.db
        if not isinstance(body, dict) or not body:
            raise StoreError(400, "PGRST102", "expected a JSON object")
        for column in body:
            self._check_column(table, column)
        owner = OWNER_COLUMN.get(table)
        if owner in body and body[owner] != caller:
            raise StoreError(403, "42501", "new row violates row-level security policy")

        rowids = await self._target_rowids(table, params, caller)
        if not rowids:
            return []
        marks = ", ".join("?" for _ in rowids)
        assignments = ", ".join(f"{column} = ?" for column in body)
        try:
            await self.db.execute(
                f"UPDATE {table} SET {assignments} WHERE rowid IN ({marks})",
                [*body.values(), *rowids],
            )
            await self.db.commit()
        except sqlite3.IntegrityError as exc:
            await self.db.rollback()
            raise self._integrity_error(exc) from exc
        updated = await self.db.execute_fetchall(
            f"SELECT * FROM {table} WHERE rowid IN ({marks})", rowids
        )
        return [dict(r) for r in updated]

    async def _delete(self, table: str, params: list[tuple[str, str]], caller: str) -> None:
        assert self.db
        rowids = await self._target_rowids(table, params, caller)
        if not rowids:
            return
        marks = ", ".join("?" for _ in rowids)
        await self.db.execute(f"DELETE FROM {table} WHERE rowid IN ({marks})", rowids)
        await self.db.commit()


def create_store_app(store: MockStore) -> FastAPI:
    """Create the mock record store FastAPI app around ``store``."""
    app = FastAPI(title="Mock record store")

    @app.api_route("/rest/v1/{table}", methods=["GET", "POST", "PATCH", "DELETE"])
    async def rows(table: str, request: Request) -> Response:
        return await store.handle(request, table)

    return app
