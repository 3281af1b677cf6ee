"""
Deta Base Helper Service
========================
A general-purpose service for working with Deta Base collections.
Supports: Put, Insert, Get, Update, Delete (single & chunked), paginated
queries, and whole-collection operations (create, clone, truncate).
Authentication via a project key sent as the ``X-API-Key`` header.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Iterable, Optional
from urllib.parse import quote

import json5
import requests
from dotenv import load_dotenv

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logger = logging.getLogger("DetaBaseHelper")

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------
API_URL = "https://database.deta.sh/v1"
CHUNK_SIZE = 25
DEFAULT_TIMEOUT = 30.0
CONFIG_FILE = "detabase-conf.json"
QUERY_DOCS = (
    "https://docs.deta.sh/docs/base/queries/ and "
    "https://docs.deta.sh/docs/base/http#query-items"
)
AUTH_HINT = "Auth first with the command `detabase auth <project-key>`."


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------
class DetaBaseError(Exception):
    """Base class for every error raised by this module."""


class RemoteError(DetaBaseError):
    """A request failed on the network or the server answered non-2xx."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        detail: Any = None,
        method: str = "",
        url: str = "",
    ):
        super().__init__(message)
        self.status_code = status_code
        self.detail = detail
        self.method = method
        self.url = url

    @classmethod
    def from_response(cls, resp: requests.Response) -> "RemoteError":
        """Build the most specific error class for ``resp``."""
        try:
            detail = resp.json()
        except ValueError:
            detail = resp.text
        method = resp.request.method if resp.request is not None else ""
        error_cls = _STATUS_ERRORS.get(resp.status_code, RemoteError)
        return error_cls(
            f"{method} {resp.url}: {resp.status_code} {resp.reason}",
            status_code=resp.status_code,
            detail=detail,
            method=method,
            url=resp.url,
        )


class NotFoundError(RemoteError):
    """HTTP 404 on a single-key get/update."""


class ConflictError(RemoteError):
    """HTTP 409: an insert hit an existing key."""


class UnauthorizedError(RemoteError):
    """The project key is missing, malformed, or rejected by the API."""


class AlreadyExistsError(DetaBaseError):
    """A create/clone target collection already holds items."""


class MalformedQueryError(DetaBaseError):
    """A query literal did not parse to an object or an array."""


class MalformedItemsError(DetaBaseError):
    """An items/update literal or an items file could not be used."""


_STATUS_ERRORS: dict[int, type[RemoteError]] = {
    401: UnauthorizedError,
    403: UnauthorizedError,
    404: NotFoundError,
    409: ConflictError,
}


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------
@dataclass
class Updates:
    """Partial update applied to one item (body of a PATCH call)."""
    set: dict = field(default_factory=dict)
    increment: dict = field(default_factory=dict)
    append: dict = field(default_factory=dict)
    prepend: dict = field(default_factory=dict)
    delete: list = field(default_factory=list)

    def to_payload(self) -> dict:
        """Return the JSON body, leaving out empty operations."""
        payload: dict[str, Any] = {}
        for name in ("set", "increment", "append", "prepend", "delete"):
            value = getattr(self, name)
            if value:
                payload[name] = value
        return payload

    def __bool__(self) -> bool:
        return bool(self.to_payload())


@dataclass
class QueryResult:
    """Items collected across every page of a query."""
    items: list[dict] = field(default_factory=list)
    last: str | None = None

    @property
    def paging(self) -> dict:
        paging: dict[str, Any] = {"size": len(self.items)}
        if self.last:
            paging["last"] = self.last
        return paging

    @property
    def keys(self) -> list[str]:
        return [item["key"] for item in self.items]

    def to_dict(self) -> dict:
        """Return the export document ``{"paging": ..., "items": ...}``."""
        return {"paging": self.paging, "items": self.items}


@dataclass
class BulkResult:
    """Accumulated outcome of a chunked bulk operation."""
    total: int = 0
    attempted: int = 0
    succeeded: list = field(default_factory=list)
    failed_chunks: int = 0
    last_error: Optional[Exception] = None

    @property
    def succeeded_count(self) -> int:
        return len(self.succeeded)

    @property
    def percent(self) -> float:
        if not self.total:
            return 100.0
        return round(self.succeeded_count * 100.0 / self.total, 1)

    @property
    def ok(self) -> bool:
        return self.failed_chunks == 0


# ---------------------------------------------------------------------------
# Literal parsing
# ---------------------------------------------------------------------------
def _loads(text: str) -> Any:
    """Parse a relaxed JSON (JSON5) literal; never evaluates expressions."""
    return json5.loads(text)


def parse_query(text: str | None) -> list[dict] | None:
    """
    Parse a query literal into a list of filter objects.

    * empty / ``None`` → ``None`` (match everything)
    * ``{...}`` → ``[{...}]``
    * ``[{...}, ...]`` → returned as-is (filters are OR-ed)

    Anything else raises :class:`MalformedQueryError`.
    """
    if text is None or not str(text).strip():
        return None
    try:
        value = _loads(text)
    except ValueError as exc:
        raise MalformedQueryError(f"Can't parse query {text!r}: {exc}") from exc
    if isinstance(value, dict):
        return [value]
    if isinstance(value, list):
        return value
    raise MalformedQueryError(f"Query must be an object or an array, got {text!r}")


def resolve_query(text: str | None) -> list[dict] | None:
    """Like :func:`parse_query`, but a malformed query is dropped with a warning."""
    try:
        return parse_query(text)
    except MalformedQueryError as exc:
        logger.warning("%s. The query will be skipped. Please, read the docs: %s", exc, QUERY_DOCS)
        return None


def parse_items(text: str) -> list[dict]:
    """Parse an items literal (one object or an array of objects)."""
    try:
        value = _loads(text)
    except ValueError as exc:
        raise MalformedItemsError(f"Can't parse items {text!r}: {exc}") from exc
    if isinstance(value, dict):
        value = [value]
    if not isinstance(value, list) or not all(isinstance(v, dict) for v in value):
        raise MalformedItemsError("Items must be an object or an array of objects.")
    return value


def _parse_object(name: str, text: str | None) -> dict:
    if text is None:
        return {}
    try:
        value = _loads(text)
    except ValueError as exc:
        raise MalformedItemsError(f"Can't parse --{name} {text!r}: {exc}") from exc
    if not isinstance(value, dict):
        raise MalformedItemsError(f"--{name} must be an object, got {text!r}")
    return value


def parse_updates(
    *,
    set: str | None = None,
    increment: str | None = None,
    append: str | None = None,
    prepend: str | None = None,
    delete: str | None = None,
) -> Updates:
    """
    Build an :class:`Updates` from command-line literals.

    ``delete`` is either an array literal of attribute names or a single
    bare attribute name.
    """
    attrs: list = []
    if delete is not None:
        stripped = delete.strip()
        if stripped.startswith("["):
            try:
                attrs = _loads(stripped)
            except ValueError as exc:
                raise MalformedItemsError(f"Can't parse --delete {delete!r}: {exc}") from exc
        else:
            attrs = [stripped]
    return Updates(
        set=_parse_object("set", set),
        increment=_parse_object("increment", increment),
        append=_parse_object("append", append),
        prepend=_parse_object("prepend", prepend),
        delete=attrs,
    )


def load_items_from_file(path: str) -> list[dict]:
    """
    Load items from a JSON file.

    Expected shape: ``[{...}, ...]`` or an export document
    ``{"paging": {...}, "items": [{...}, ...]}``.
    """
    file_path = Path(path).resolve()
    if not file_path.is_file():
        raise FileNotFoundError(f"File does not exist: {file_path}")
    try:
        with open(file_path, encoding="utf-8-sig") as fh:
            data = json.load(fh)
    except ValueError as exc:
        raise MalformedItemsError(f"Can't parse {file_path}. Invalid JSON: {exc}") from exc
    if isinstance(data, dict) and isinstance(data.get("items"), list):
        data = data["items"]
    if not isinstance(data, list) or not all(isinstance(v, dict) for v in data):
        raise MalformedItemsError(
            "File must contain a JSON-serialized array of items."
        )
    return data


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------
class DetaBaseService:
    """Immutable client over the Deta Base HTTP API."""

    def __init__(
        self,
        project_key: str,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        api_url: str = API_URL,
    ):
        if not project_key or "_" not in project_key:
            raise UnauthorizedError(
                'Wrong project key. The project key must contain an underscore "_"'
            )
        self._project_key = project_key
        self._project_id = project_key.split("_", 1)[0]
        self._timeout = timeout
        self._api_url = api_url.rstrip("/")

    def __repr__(self) -> str:
        return f"DetaBaseService(project_id={self._project_id!r})"

    @property
    def project_key(self) -> str:
        return self._project_key

    @property
    def project_id(self) -> str:
        return self._project_id

    @property
    def timeout(self) -> float:
        return self._timeout

    @property
    def base_url(self) -> str:
        return f"{self._api_url}/{self._project_id}"

    def with_project_key(self, project_key: str) -> "DetaBaseService":
        """Return a new client authenticated with ``project_key``."""
        return DetaBaseService(project_key, timeout=self._timeout, api_url=self._api_url)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _headers(self) -> dict:
        return {
            "X-API-Key": self._project_key,
            "Content-Type": "application/json",
        }

    def _url(self, database: str, *parts: str) -> str:
        path = "/".join(quote(p, safe="") for p in (database, *parts))
        return f"{self.base_url}/{path}"

    def _request(self, method: str, url: str, body: dict | None = None) -> Any:
        logger.debug("%s %s", method, url)
        try:
            resp = requests.request(
                method,
                url,
                headers=self._headers(),
                json=body,
                timeout=self._timeout,
            )
        except requests.RequestException as exc:
            raise RemoteError(
                f"{method} {url}: {exc}", detail=str(exc), method=method, url=url
            ) from exc
        if not resp.ok:
            raise RemoteError.from_response(resp)
        if not resp.content:
            return None
        try:
            return resp.json()
        except ValueError as exc:
            raise RemoteError(
                f"{method} {url}: {resp.status_code} response is not JSON",
                status_code=resp.status_code,
                detail=resp.text,
                method=method,
                url=url,
            ) from exc

    # ------------------------------------------------------------------
    # Single-record operations
    # ------------------------------------------------------------------
    def get(self, database: str, key: str) -> dict:
        """GET one item; raises :class:`NotFoundError` if it is absent."""
        return self._request("GET", self._url(database, "items", key))

    def delete(self, database: str, key: str) -> None:
        """DELETE one item. The API answers 200 even if the key is absent."""
        self._request("DELETE", self._url(database, "items", key))

    def update(self, database: str, key: str, updates: Updates) -> dict:
        """PATCH one item; raises :class:`NotFoundError` if it is absent."""
        return self._request(
            "PATCH", self._url(database, "items", key), updates.to_payload()
        )

    # ------------------------------------------------------------------
    # Multi-record operations
    # ------------------------------------------------------------------
    def put(self, database: str, items: list[dict]) -> list[dict]:
        """
        PUT up to ``CHUNK_SIZE`` items, overwriting existing keys.
        Returns the processed items with their (possibly generated) keys.
        """
        if len(items) > CHUNK_SIZE:
            raise ValueError(f"put accepts at most {CHUNK_SIZE} items per request")
        data = self._request("PUT", self._url(database, "items"), {"items": items})
        processed = (data or {}).get("processed", {}).get("items", [])
        failed = (data or {}).get("failed", {}).get("items", [])
        if failed:
            logger.warning("%d item(s) were rejected by %r", len(failed), database)
        return processed

    def insert(self, database: str, items: list[dict]) -> list[dict]:
        """
        POST each item as create-only.
        Raises :class:`ConflictError` as soon as an item's key already exists.
        """
        url = self._url(database, "items")
        return [self._request("POST", url, {"item": item}) for item in items]

    def query(
        self,
        database: str,
        query: list[dict] | None = None,
        *,
        limit: int | None = None,
        last: str | None = None,
    ) -> dict:
        """POST one query page: ``{"paging": {"size", "last"}, "items": [...]}``."""
        body: dict[str, Any] = {}
        if query is not None:
            body["query"] = query
        if limit is not None:
            body["limit"] = limit
        if last:
            body["last"] = last
        return self._request("POST", self._url(database, "query"), body) or {}


# ---------------------------------------------------------------------------
# Pagination
# ---------------------------------------------------------------------------
def fetch_all(
    svc: DetaBaseService,
    database: str,
    query: list[dict] | None = None,
    *,
    limit: int | None = None,
    last: str | None = None,
) -> QueryResult:
    """
    Follow the ``last`` cursor until the result set is exhausted or
    ``limit`` items were collected. Any page error aborts the walk.
    """
    items: list[dict] = []
    cursor = last
    while True:
        remaining = None if limit is None else limit - len(items)
        page = svc.query(database, query, limit=remaining, last=cursor)
        items.extend(page.get("items", []))
        cursor = page.get("paging", {}).get("last")
        logger.debug("Fetched %d item(s) from %r, cursor=%r", len(items), database, cursor)
        if not cursor:
            return QueryResult(items=items)
        if limit is not None and len(items) >= limit:
            return QueryResult(items=items, last=cursor)


# ---------------------------------------------------------------------------
# Chunked bulk execution
# ---------------------------------------------------------------------------
def chunk_items(elements: list, size: int = CHUNK_SIZE) -> list[list]:
    """Split ``elements`` into ordered chunks of at most ``size``."""
    if size < 1:
        raise ValueError("chunk size must be at least 1")
    return [elements[i:i + size] for i in range(0, len(elements), size)]


def run_bulk(
    elements: list,
    operation: Callable[[list], Iterable],
    *,
    chunk_size: int = CHUNK_SIZE,
    progress_callback: Callable[[int, int], Any] | None = None,
    fatal: tuple[type[BaseException], ...] = (),
) -> BulkResult:
    """
    Apply ``operation`` to every chunk of ``elements``, one chunk at a time.

    A :class:`RemoteError` from a chunk is recorded and the next chunk is
    attempted; errors listed in ``fatal`` (and any non-remote error) are
    re-raised. ``progress_callback(attempted, total)`` fires after every
    chunk attempt.
    """
    result = BulkResult(total=len(elements))
    chunks = chunk_items(elements, chunk_size)
    for index, chunk in enumerate(chunks):
        try:
            processed = operation(chunk)
        except RemoteError as exc:
            if isinstance(exc, fatal):
                raise
            result.failed_chunks += 1
            result.last_error = exc
            logger.warning(
                "Chunk %d/%d (%d element(s)) failed: %s",
                index + 1, len(chunks), len(chunk), exc,
            )
        else:
            result.succeeded.extend(processed)
            logger.debug("Chunk %d/%d done", index + 1, len(chunks))
        result.attempted += len(chunk)
        if progress_callback:
            progress_callback(result.attempted, result.total)
    return result


# ---------------------------------------------------------------------------
# Collection operations
# ---------------------------------------------------------------------------
def put_items(svc: DetaBaseService, database: str, items: list[dict], **bulk: Any) -> BulkResult:
    """Overwrite-by-key every item, chunked."""
    return run_bulk(items, lambda chunk: svc.put(database, chunk), **bulk)


def insert_items(svc: DetaBaseService, database: str, items: list[dict], **bulk: Any) -> BulkResult:
    """Create-only every item, chunked; a conflicting key fails its chunk."""
    return run_bulk(items, lambda chunk: svc.insert(database, chunk), **bulk)


def delete_keys(svc: DetaBaseService, database: str, keys: list[str], **bulk: Any) -> BulkResult:
    """Delete every key, chunked; succeeded holds the deleted keys."""
    def _delete(chunk: list[str]) -> list[str]:
        for key in chunk:
            svc.delete(database, key)
        return chunk

    return run_bulk(keys, _delete, **bulk)


def update_keys(
    svc: DetaBaseService,
    database: str,
    keys: list[str],
    updates: Updates,
    **bulk: Any,
) -> BulkResult:
    """Apply the same ``updates`` to every key, chunked."""
    def _update(chunk: list[str]) -> list[str]:
        for key in chunk:
            svc.update(database, key, updates)
        return chunk

    return run_bulk(keys, _update, **bulk)


def ensure_empty(svc: DetaBaseService, database: str) -> None:
    """Raise :class:`AlreadyExistsError` if ``database`` holds any item."""
    if fetch_all(svc, database, limit=1).items:
        raise AlreadyExistsError(f'Database "{database}" already exists.')


def create_collection(svc: DetaBaseService, database: str) -> str:
    """
    Materialise an empty collection.

    The API has no "create" call, so a throwaway item is written and then
    deleted. Returns the key the remote assigned to it.
    """
    ensure_empty(svc, database)
    processed = svc.put(database, [{"create": 1}])
    if not processed:
        raise RemoteError(f'Could not create the database "{database}".')
    key = processed[0]["key"]
    svc.delete(database, key)
    logger.debug("Created %r (throwaway key %r)", database, key)
    return key


def truncate_collection(svc: DetaBaseService, database: str, **bulk: Any) -> BulkResult:
    """Delete every item of ``database``; an empty collection is a no-op."""
    found = fetch_all(svc, database)
    if not found.items:
        return BulkResult()
    return delete_keys(svc, database, found.keys, **bulk)


def clone_collection(
    svc: DetaBaseService,
    source: str,
    destination: str,
    query: list[dict] | None = None,
    *,
    force: bool = False,
    **bulk: Any,
) -> BulkResult:
    """Copy (matching) items of ``source`` into ``destination``."""
    if not force:
        ensure_empty(svc, destination)
    found = fetch_all(svc, source, query)
    if not found.items:
        return BulkResult()
    return put_items(svc, destination, found.items, **bulk)


def delete_by_query(
    svc: DetaBaseService, database: str, query: list[dict] | None, **bulk: Any
) -> BulkResult:
    found = fetch_all(svc, database, query)
    if not found.items:
        return BulkResult()
    return delete_keys(svc, database, found.keys, **bulk)


def update_by_query(
    svc: DetaBaseService,
    database: str,
    query: list[dict] | None,
    updates: Updates,
    **bulk: Any,
) -> BulkResult:
    found = fetch_all(svc, database, query)
    if not found.items:
        return BulkResult()
    return update_keys(svc, database, found.keys, updates, **bulk)


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------
def load_project_key(config_path: str = CONFIG_FILE, env_path: str = ".env") -> str:
    """
    Return the stored project key.

    ``DETA_PROJECT_KEY`` (environment or ``.env``) wins over the JSON
    credential file written by :func:`save_project_key`.
    """
    load_dotenv(env_path)
    key = os.environ.get("DETA_PROJECT_KEY")
    if key:
        return key

    path = Path(config_path).resolve()
    if not path.is_file():
        raise UnauthorizedError(f"Unauthorized. {AUTH_HINT}")
    try:
        with open(path, encoding="utf-8") as fh:
            key = json.load(fh).get("projectKey")
    except (OSError, ValueError, AttributeError) as exc:
        raise UnauthorizedError(f"Can't parse {path}. Try to auth again. {AUTH_HINT}") from exc
    if not key:
        raise UnauthorizedError(f"Unauthorized. {AUTH_HINT}")
    return key


def save_project_key(project_key: str, config_path: str = CONFIG_FILE) -> Path:
    """Validate and store ``project_key``; returns the credential file path."""
    if "_" not in project_key:
        raise UnauthorizedError(
            'Wrong project key. The project key must contain an underscore "_"'
        )
    path = Path(config_path).resolve()
    path.write_text(json.dumps({"projectKey": project_key}, indent=2), encoding="utf-8")
    logger.debug("Saved project key to %s", path)
    return path


# ---------------------------------------------------------------------------
# Factory helper
# ---------------------------------------------------------------------------
def create_service_from_env(
    env_path: str = ".env", config_path: str = CONFIG_FILE
) -> DetaBaseService:
    """Instantiate the service from the stored key and environment overrides."""
    project_key = load_project_key(config_path, env_path)
    raw_timeout = os.environ.get("DETABASE_TIMEOUT", DEFAULT_TIMEOUT)
    try:
        timeout = float(raw_timeout)
    except ValueError as exc:
        raise DetaBaseError(
            f"DETABASE_TIMEOUT must be a number of seconds, got {raw_timeout!r}"
        ) from exc
    api_url = os.environ.get("DETA_BASE_URL", API_URL)
    return DetaBaseService(project_key, timeout=timeout, api_url=api_url)
