# src/dynamic_data_agent/query/store.py
import inspect
import json
import logging
from dataclasses import dataclass, field

from supabase import AsyncClient, acreate_client

from dynamic_data_agent.core.config import APP_CONFIG
from dynamic_data_agent.core.errors import AuthError, QueryExecutionError
from dynamic_data_agent.query.filters import CompiledPredicate, Condition

app_logger = logging.getLogger("quart.app")


@dataclass(frozen=True)
class SortSpec:
    column: str
    descending: bool = False


@dataclass(frozen=True)
class TableQuery:
    """A fully validated single-table read. Only validated identifiers ever reach this object."""
    table: str
    predicate: CompiledPredicate
    columns: str = "*"
    sort: SortSpec | None = None
    limit: int | None = None
    offset: int | None = None


class DataStore:
    """
    The storage collaborator. Implementations translate a TableQuery into their native
    filter calls and pass every value as a bound parameter.
    """
    async def fetch(self, query: TableQuery) -> list[dict]:
        raise NotImplementedError

    async def invoke_function(self, name: str, body: dict):
        raise NotImplementedError

    async def close(self):
        """Releases any connections held for this request."""
        return None


@dataclass
class DataScope:
    """
    Per-request data access handle carrying the caller's identity. Each request builds its
    own scope; nothing in here is shared between requests.
    """
    store: DataStore
    owner_id: str | None
    access_token: str | None = None
    owner_column: str = field(default_factory=lambda: APP_CONFIG.OWNER_COLUMN)

    def owner_predicate(self) -> CompiledPredicate:
        if not self.owner_id:
            raise AuthError("Unauthorized: no owner context for this request")
        return CompiledPredicate((Condition(self.owner_column, "eq", self.owner_id),))

    async def close(self):
        await self.store.close()


class SupabaseStore(DataStore):
    def __init__(self, client: AsyncClient, access_token: str):
        self.client = client
        self.access_token = access_token

    async def fetch(self, query: TableQuery) -> list[dict]:
        builder = self.client.table(query.table).select(query.columns)
        builder = query.predicate.apply(builder)
        if query.sort:
            builder = builder.order(query.sort.column, desc=query.sort.descending)
        if query.offset is not None:
            builder = builder.range(query.offset, query.offset + query.limit - 1)
        elif query.limit is not None:
            builder = builder.limit(query.limit)

        try:
            response = await builder.execute()
        except Exception as e:
            message = getattr(e, "message", None) or str(e)
            app_logger.error(f"Store query on '{query.table}' failed: {message}")
            raise QueryExecutionError(message) from e
        return response.data or []

    async def invoke_function(self, name: str, body: dict):
        try:
            data = await self.client.functions.invoke(
                name,
                invoke_options={
                    "body": body,
                    "headers": {"Authorization": f"Bearer {self.access_token}"},
                    "responseType": "json",
                },
            )
        except Exception as e:
            app_logger.error(f"Edge function '{name}' failed: {e}")
            raise QueryExecutionError(f"Edge function '{name}' failed: {e}") from e

        if isinstance(data, (bytes, str)):
            return json.loads(data) if data else None
        return data

    async def close(self):
        await _close_client(self.client)


class MemoryStore(DataStore):
    """
    In-process store with the same filtering semantics as the PostgREST builder. Used for
    local runs without Supabase and as the test double; it records every query it receives.
    """
    def __init__(self, tables: dict[str, list[dict]] | None = None, functions: dict | None = None):
        self.tables = {name: [dict(row) for row in rows] for name, rows in (tables or {}).items()}
        self.functions = dict(functions or {})
        self.queries: list[TableQuery] = []
        self.function_calls: list[tuple[str, dict]] = []

    def _known_columns(self, table: str) -> set:
        columns = set()
        for row in self.tables[table]:
            columns.update(row.keys())
        return columns

    async def fetch(self, query: TableQuery) -> list[dict]:
        self.queries.append(query)
        if query.table not in self.tables:
            raise QueryExecutionError(f'relation "public.{query.table}" does not exist')

        known = self._known_columns(query.table)
        requested = [] if query.columns == "*" else query.columns.split(",")
        referenced = requested + query.predicate.columns() + ([query.sort.column] if query.sort else [])
        if known:
            for column in referenced:
                if column not in known:
                    raise QueryExecutionError(f"column {query.table}.{column} does not exist")

        rows = [row for row in self.tables[query.table] if query.predicate.matches(row)]

        if query.sort:
            rows = _sort_rows(rows, query.sort)

        if query.offset is not None:
            rows = rows[query.offset:query.offset + query.limit]
        elif query.limit is not None:
            rows = rows[:query.limit]

        if requested:
            return [{column: row.get(column) for column in requested} for row in rows]
        return [dict(row) for row in rows]

    async def invoke_function(self, name: str, body: dict):
        self.function_calls.append((name, body))
        handler = self.functions.get(name)
        if handler is None:
            raise QueryExecutionError(f"Edge function '{name}' failed: function not found")
        result = handler(body)
        if inspect.isawaitable(result):
            result = await result
        return result


def _sort_rows(rows: list[dict], sort: SortSpec) -> list[dict]:
    present = [row for row in rows if row.get(sort.column) is not None]
    missing = [row for row in rows if row.get(sort.column) is None]
    try:
        present.sort(key=lambda row: row[sort.column], reverse=sort.descending)
    except TypeError:
        present.sort(key=lambda row: str(row[sort.column]), reverse=sort.descending)
    # Postgres default: NULLS LAST ascending, NULLS FIRST descending
    return missing + present if sort.descending else present + missing


async def _close_client(client: AsyncClient):
    # postgrest and functions are created lazily and may never have been opened
    if client._postgrest is not None:
        await client._postgrest.aclose()
    if client._functions is not None:
        await client._functions._client.aclose()
    await client.auth.close()


def _bearer_token(authorization: str | None) -> str:
    if not authorization:
        raise AuthError("No authorization header")
    token = authorization[len("Bearer "):] if authorization.startswith("Bearer ") else authorization
    token = token.strip()
    if not token:
        raise AuthError("No authorization header")
    return token


class SupabaseConnector:
    """Resolves the caller from a bearer token and opens a row-level-secured scope for them."""
    def __init__(self, url: str, anon_key: str):
        if not url or not anon_key:
            raise ValueError("Supabase credentials not configured. Set SUPABASE_URL and SUPABASE_ANON_KEY environment variables.")
        self.url = url
        self.anon_key = anon_key

    async def open_scope(self, authorization: str | None) -> DataScope:
        token = _bearer_token(authorization)
        client = await acreate_client(self.url, self.anon_key)
        try:
            response = await client.auth.get_user(token)
        except Exception as e:
            app_logger.warning(f"Token verification failed: {e}")
            await _close_client(client)
            raise AuthError() from e

        user = getattr(response, "user", None)
        if not user:
            await _close_client(client)
            raise AuthError()

        # Row-level security in the store evaluates against the caller's JWT
        client.postgrest.auth(token)
        return DataScope(store=SupabaseStore(client, token), owner_id=user.id, access_token=token)


class MemoryConnector:
    def __init__(self, store: MemoryStore, tokens: dict[str, str]):
        self.store = store
        self.tokens = dict(tokens)

    async def open_scope(self, authorization: str | None) -> DataScope:
        token = _bearer_token(authorization)
        owner_id = self.tokens.get(token)
        if not owner_id:
            raise AuthError()
        return DataScope(store=self.store, owner_id=owner_id, access_token=token)
