# =============================================================================
# core/repository.py  —  KintoneRepository (the only code that talks HTTP)
# =============================================================================
#
# WHAT THIS MODULE DOES:
#   Maps each domain operation (get/search/create/update records, comments,
#   statuses, apps, files) onto kintone's fixed REST endpoints under
#   https://{domain}/k/v1/.  It owns request shaping, pagination, chunking
#   and response → dataclass mapping.
#
# RULES EVERY METHOD FOLLOWS:
#   1. READS are sent as POST with "X-HTTP-Method-Override: GET" so large
#      filter payloads travel in the JSON body.  Writes use POST/PUT.
#   2. Any non-2xx answer, transport failure or unreadable 2xx body (an
#      HTML login page, a missing key) is re-raised as ONE operation-scoped
#      KintoneError ("Failed to get record: ...").  The underlying exception
#      stays attached as __cause__.
#   3. Record ids come back from kintone as strings; numeric ones are
#      returned as ints so reads, searches and creates agree.
#   4. Batches above kintone's per-call cap are split with
#      core.batching.chunked() and sent strictly one after another.  The
#      first failing chunk aborts the batch; earlier chunks stay applied
#      and their results ride along on the error as `completed`.
#   5. No retries, no caching.
#
# STATE:
#   Only read-only values (credentials, base URL, headers, an optional
#   injected transport).  Every operation opens its own AsyncClient, so
#   concurrent tool calls share nothing mutable.
# =============================================================================

import base64
import binascii
import logging
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from typing import Any

import httpx

from core.batching import (
    RECORDS_PER_PAGE,
    RECORDS_PER_WRITE,
    STATUSES_PER_WRITE,
    chunked,
)
from core.errors import (
    ConflictError,
    KintoneError,
    TransportError,
    UpstreamRejection,
)
from core.models import KintoneCredentials, KintoneRecord, SearchResult

logger = logging.getLogger(__name__)

METHOD_OVERRIDE_HEADER = "X-HTTP-Method-Override"

# kintone's error code for "the revision you sent is not the latest"
REVISION_CONFLICT_CODE = "GAIA_CO02"

# reserved field carrying the record id in search results
ID_FIELD = "$id"

RECORD_PATH = "/k/v1/record.json"
RECORDS_PATH = "/k/v1/records.json"
COMMENT_PATH = "/k/v1/record/comment.json"
COMMENTS_PATH = "/k/v1/record/comments.json"
STATUS_PATH = "/k/v1/record/status.json"
STATUSES_PATH = "/k/v1/records/status.json"
APP_PATH = "/k/v1/app.json"
APPS_PATH = "/k/v1/apps.json"
FORM_FIELDS_PATH = "/k/v1/app/form/fields.json"
FILE_PATH = "/k/v1/file.json"


# =============================================================================
# Error wrapping
# =============================================================================
def _response_body(response: httpx.Response) -> Any:
    """Decode an error body as JSON when possible, else return the raw text."""
    try:
        return response.json()
    except ValueError:
        return response.text


def _rejection(
    operation: str, response: httpx.Response, completed: list | None
) -> UpstreamRejection:
    body = _response_body(response)
    error_code = body.get("code") if isinstance(body, dict) else None
    upstream_message = body.get("message") if isinstance(body, dict) else None
    reason = upstream_message or body
    detail = f"{response.status_code} {response.reason_phrase}".strip()
    if reason:
        detail = f"{detail}: {reason}"

    is_conflict = response.status_code == 409 or error_code == REVISION_CONFLICT_CODE
    error_cls = ConflictError if is_conflict else UpstreamRejection
    return error_cls(
        f"Failed to {operation}: {detail}",
        operation=operation,
        status_code=response.status_code,
        body=body,
        error_code=error_code,
        completed=completed,
    )


class _UnexpectedBody(Exception):
    """A 2xx answer whose body is not the JSON object the operation expects."""

    def __init__(self, response: httpx.Response, reason: str) -> None:
        super().__init__(reason)
        self.response = response


def _decode(response: httpx.Response, key: str | None = None) -> Any:
    """Decode a successful response as a JSON object, optionally taking one key.

    An HTML login page, a truncated body or a missing key raises
    _UnexpectedBody, which _wrap_errors turns into an UpstreamRejection.
    """
    try:
        data = response.json()
        if not isinstance(data, dict):
            raise TypeError(f"expected a JSON object, got {type(data).__name__}")
        return data if key is None else data[key]
    except (ValueError, KeyError, TypeError) as exc:
        raise _UnexpectedBody(
            response, f"unexpected response body ({type(exc).__name__}: {exc})"
        ) from exc


@contextmanager
def _wrap_errors(operation: str, completed: list | None = None) -> Iterator[None]:
    """Re-raise failures inside the block as operation-scoped errors.

    Covers non-2xx answers, transport failures, and 2xx answers whose
    body cannot be read.  `completed` is read at failure time, so a batch
    loop can keep appending to it and the error reports whatever had
    succeeded so far.
    """
    try:
        yield
    except KintoneError:
        raise
    except _UnexpectedBody as exc:
        response = exc.response
        logger.error(
            "%s returned an unreadable body: status=%s body=%s",
            operation, response.status_code, response.text[:500],
        )
        raise UpstreamRejection(
            f"Failed to {operation}: {response.status_code} {exc}",
            operation=operation,
            status_code=response.status_code,
            body=response.text,
            completed=completed,
        ) from exc.__cause__
    except (ValueError, KeyError, TypeError) as exc:
        logger.error("%s returned an unexpected payload: %r", operation, exc)
        raise UpstreamRejection(
            f"Failed to {operation}: unexpected response ({type(exc).__name__}: {exc})",
            operation=operation,
            completed=completed,
        ) from exc
    except httpx.HTTPStatusError as exc:
        logger.error(
            "%s rejected: status=%s body=%s",
            operation, exc.response.status_code, exc.response.text,
        )
        raise _rejection(operation, exc.response, completed) from exc
    except httpx.HTTPError as exc:
        logger.error("%s failed in transport: %r", operation, exc)
        raise TransportError(
            f"Failed to {operation}: {type(exc).__name__}: {exc}",
            operation=operation,
            completed=completed,
        ) from exc


def _paged_query(query: str | None, limit: int, offset: int) -> str:
    """Append kintone's paging clause to a (possibly empty) filter expression."""
    clause = f"limit {limit} offset {offset}"
    return f"{query} {clause}" if query else clause


def _record_id(value: Any) -> int | str | None:
    """kintone sends ids as strings; numeric ones become ints."""
    if isinstance(value, str) and value.isdigit():
        return int(value)
    return value


def _record_from_search(app_id: int, raw: dict[str, Any]) -> KintoneRecord:
    id_field = raw.get(ID_FIELD)
    record_id = id_field.get("value") if isinstance(id_field, dict) else None
    return KintoneRecord(app_id=app_id, record_id=_record_id(record_id), fields=raw)


# =============================================================================
# Repository
# =============================================================================
class KintoneRepository:
    """Async façade over the kintone REST API.

    Args:
        credentials: Tenant domain and login; shared read-only.
        transport: Optional httpx transport.  Tests inject
            httpx.MockTransport here; production leaves it None.
    """

    def __init__(
        self,
        credentials: KintoneCredentials,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.credentials = credentials
        self.base_url = credentials.base_url
        self.headers = credentials.headers
        self._transport = transport

    # -------------------------------------------------------------------------
    # HTTP plumbing
    # -------------------------------------------------------------------------
    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self.base_url, transport=self._transport)

    async def _read(
        self, client: httpx.AsyncClient, path: str, payload: dict[str, Any]
    ) -> httpx.Response:
        """POST-as-GET: the body carries the parameters, the header the verb."""
        headers = {**self.headers, METHOD_OVERRIDE_HEADER: "GET"}
        response = await client.post(path, json=payload, headers=headers)
        response.raise_for_status()
        return response

    async def _write(
        self,
        client: httpx.AsyncClient,
        method: str,
        path: str,
        payload: dict[str, Any],
        key: str | None = None,
    ) -> Any:
        response = await client.request(method, path, json=payload, headers=self.headers)
        response.raise_for_status()
        return _decode(response, key)

    async def _fetch_page(
        self,
        client: httpx.AsyncClient,
        app_id: int,
        query: str | None,
        fields: Sequence[str] | None,
        limit: int,
        offset: int,
    ) -> SearchResult:
        payload: dict[str, Any] = {
            "app": app_id,
            "query": _paged_query(query, limit, offset),
            "totalCount": True,
        }
        if fields:
            # keep "$id" so restricted searches still identify their records
            payload["fields"] = list(fields) if ID_FIELD in fields else [*fields, ID_FIELD]

        logger.debug("records.json request: %s", payload)
        data = _decode(await self._read(client, RECORDS_PATH, payload))

        records = [_record_from_search(app_id, raw) for raw in data.get("records", [])]
        next_offset = offset + len(records)
        total = data.get("totalCount")
        return SearchResult(
            records=records,
            total_count=int(total) if total is not None else next_offset,
            next_offset=next_offset,
        )

    # -------------------------------------------------------------------------
    # Records: read
    # -------------------------------------------------------------------------
    async def get_record(self, app_id: int, record_id: int | str) -> KintoneRecord:
        """Fetch one record.  The returned ids are the ones asked for, numeric ids as ints."""
        logger.info("Fetching record %s/%s", app_id, record_id)
        with _wrap_errors("get record"):
            async with self._client() as client:
                response = await self._read(
                    client, RECORD_PATH, {"app": app_id, "id": record_id}
                )
                fields = _decode(response, "record")
        return KintoneRecord(
            app_id=app_id, record_id=_record_id(record_id), fields=fields
        )

    async def search_records(
        self,
        app_id: int,
        query: str | None = None,
        fields: Sequence[str] | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> SearchResult:
        """Fetch one page of records matching `query`.

        `query` is a kintone query expression passed through as-is; None or
        "" means every record the caller may see.  `limit` above kintone's
        cap of 500 is not clamped here; kintone rejects it.
        """
        logger.info("Searching records in app %s (limit=%s, offset=%s)", app_id, limit, offset)
        with _wrap_errors("search records"):
            async with self._client() as client:
                return await self._fetch_page(client, app_id, query, fields, limit, offset)

    async def get_all_records(
        self,
        app_id: int,
        query: str | None = None,
        fields: Sequence[str] | None = None,
    ) -> list[KintoneRecord]:
        """Fetch every matching record, one 500-record page at a time.

        Stops at the first page shorter than 500, so a result set whose
        size is an exact multiple of 500 costs one extra (empty) request.
        """
        all_records: list[KintoneRecord] = []
        offset = 0
        with _wrap_errors("get all records", all_records):
            async with self._client() as client:
                while True:
                    page = await self._fetch_page(
                        client, app_id, query, fields, RECORDS_PER_PAGE, offset
                    )
                    all_records.extend(page.records)
                    logger.info("Fetched %d records so far...", len(all_records))
                    if len(page.records) < RECORDS_PER_PAGE:
                        break
                    offset += RECORDS_PER_PAGE

        logger.info("Total records fetched: %d", len(all_records))
        return all_records

    # -------------------------------------------------------------------------
    # Records: write
    # -------------------------------------------------------------------------
    async def create_record(self, app_id: int, fields: dict[str, Any]) -> int | str:
        """Create one record and return its new id."""
        logger.info("Adding record in app %s", app_id)
        with _wrap_errors("create record"):
            async with self._client() as client:
                new_id = await self._write(
                    client, "POST", RECORD_PATH, {"app": app_id, "record": fields}, "id"
                )
        return _record_id(new_id)

    async def add_records(
        self, app_id: int, records: Sequence[dict[str, Any]]
    ) -> list[int | str]:
        """Create many records, 100 per request, and return ids in input order."""
        logger.info("Adding %d records in app %s", len(records), app_id)
        ids: list[int | str] = []
        with _wrap_errors("add records", ids):
            async with self._client() as client:
                for chunk in chunked(records, RECORDS_PER_WRITE):
                    new_ids = await self._write(
                        client, "POST", RECORDS_PATH, {"app": app_id, "records": chunk}, "ids"
                    )
                    ids.extend(_record_id(i) for i in new_ids)
        return ids

    async def update_record(
        self,
        app_id: int,
        record_id: int | str,
        fields: dict[str, Any],
        revision: int | str | None = None,
    ) -> str | None:
        """Update one record.

        With `revision`, kintone applies the update only if it still holds
        that revision and otherwise answers with a conflict (ConflictError).
        Without it, the update is unconditional.

        Returns:
            The record's new revision as reported by kintone.
        """
        logger.info("Updating record %s/%s (revision=%s)", app_id, record_id, revision)
        payload: dict[str, Any] = {"app": app_id, "id": record_id, "record": fields}
        if revision is not None:
            payload["revision"] = revision

        with _wrap_errors("update record"):
            async with self._client() as client:
                data = await self._write(client, "PUT", RECORD_PATH, payload)
        return data.get("revision")

    async def update_records(
        self, app_id: int, updates: Sequence[dict[str, Any]]
    ) -> list[dict[str, Any]]:
        """Update many records, 100 per request.

        Each update is a dict with "id" (or "updateKey"), "record" and an
        optional "revision", sent as-is.

        Returns:
            One {"id", "revision"} dict per update, in input order.
        """
        logger.info("Updating %d records in app %s", len(updates), app_id)
        results: list[dict[str, Any]] = []
        with _wrap_errors("update records", results):
            async with self._client() as client:
                for chunk in chunked(updates, RECORDS_PER_WRITE):
                    results.extend(await self._write(
                        client, "PUT", RECORDS_PATH, {"app": app_id, "records": chunk}, "records"
                    ))
        return results

    # -------------------------------------------------------------------------
    # Comments
    # -------------------------------------------------------------------------
    async def get_comments(
        self,
        app_id: int,
        record_id: int | str,
        order: str = "desc",
        offset: int = 0,
        limit: int = 10,
    ) -> list[dict[str, Any]]:
        logger.info("Getting comments for record %s/%s", app_id, record_id)
        payload = {
            "app": app_id,
            "record": record_id,
            "order": order,
            "offset": offset,
            "limit": limit,
        }
        with _wrap_errors("get comments"):
            async with self._client() as client:
                response = await self._read(client, COMMENTS_PATH, payload)
                return _decode(response, "comments")

    async def add_comment(
        self,
        app_id: int,
        record_id: int | str,
        text: str,
        mentions: Sequence[dict[str, Any]] | None = None,
    ) -> str:
        """Post a comment and return its id.  `mentions` is sent only if non-empty."""
        logger.info("Adding comment to record %s/%s", app_id, record_id)
        comment: dict[str, Any] = {"text": text}
        if mentions:
            comment["mentions"] = list(mentions)

        with _wrap_errors("add comment"):
            async with self._client() as client:
                return await self._write(
                    client,
                    "POST",
                    COMMENT_PATH,
                    {"app": app_id, "record": record_id, "comment": comment},
                    "id",
                )

    # -------------------------------------------------------------------------
    # Process management (status)
    # -------------------------------------------------------------------------
    # The workflow itself lives in kintone.  Action names and assignees are
    # passed through untouched; an invalid action comes back as a rejection.
    # -------------------------------------------------------------------------
    async def update_status(
        self,
        app_id: int,
        record_id: int | str,
        action: str,
        assignee: str | None = None,
    ) -> dict[str, Any]:
        logger.info("Updating status for record %s/%s, action: %s", app_id, record_id, action)
        payload: dict[str, Any] = {"app": app_id, "id": record_id, "action": action}
        if assignee is not None:
            payload["assignee"] = assignee

        with _wrap_errors("update status"):
            async with self._client() as client:
                return await self._write(client, "PUT", STATUS_PATH, payload)

    async def update_statuses(
        self, app_id: int, updates: Sequence[dict[str, Any]]
    ) -> list[dict[str, Any]]:
        """Apply status actions to many records, 100 per request, in order."""
        logger.info("Updating statuses for %d records in app %s", len(updates), app_id)
        results: list[dict[str, Any]] = []
        with _wrap_errors("update statuses", results):
            async with self._client() as client:
                for chunk in chunked(updates, STATUSES_PER_WRITE):
                    results.extend(await self._write(
                        client, "PUT", STATUSES_PATH, {"app": app_id, "records": chunk}, "records"
                    ))
        return results

    # -------------------------------------------------------------------------
    # Apps
    # -------------------------------------------------------------------------
    async def get_app(self, app_id: int) -> dict[str, Any]:
        logger.info("Getting app info for ID: %s", app_id)
        with _wrap_errors("get app info"):
            async with self._client() as client:
                response = await self._read(client, APP_PATH, {"id": app_id})
                return _decode(response)

    async def get_apps(
        self,
        ids: Sequence[int] | None = None,
        codes: Sequence[str] | None = None,
        name: str | None = None,
        space_ids: Sequence[int] | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> dict[str, Any]:
        """List apps.  Every filter is optional; `name` is a partial match."""
        payload: dict[str, Any] = {"limit": limit, "offset": offset}
        if ids:
            payload["ids"] = list(ids)
        if codes:
            payload["codes"] = list(codes)
        if name:
            payload["name"] = name
        if space_ids:
            payload["spaceIds"] = list(space_ids)

        logger.info("Getting apps with params: %s", payload)
        with _wrap_errors("get apps"):
            async with self._client() as client:
                response = await self._read(client, APPS_PATH, payload)
                return _decode(response)

    async def get_form_fields(
        self, app_id: int, lang: str | None = None
    ) -> dict[str, Any]:
        """Return the app's field definitions keyed by field code."""
        logger.info("Getting form fields for app: %s", app_id)
        payload: dict[str, Any] = {"app": app_id}
        if lang:
            payload["lang"] = lang

        with _wrap_errors("get form fields"):
            async with self._client() as client:
                response = await self._read(client, FORM_FIELDS_PATH, payload)
                return _decode(response, "properties")

    # -------------------------------------------------------------------------
    # Files
    # -------------------------------------------------------------------------
    async def upload_file(self, file_name: str, base64_data: str) -> str:
        """Upload a base64-encoded file and return kintone's fileKey.

        kintone takes uploads as multipart/form-data, so the payload is
        decoded here and sent as a file part.  The fileKey is then used
        as the value of an attachment field in a create/update call.

        Raises:
            ValueError: If `base64_data` does not decode; nothing is sent.
        """
        logger.info("Uploading file: %s", file_name)
        try:
            content = base64.b64decode(base64_data, validate=True)
        except binascii.Error as exc:
            raise ValueError(f"file data for {file_name!r} is not valid base64") from exc

        headers = {"X-Cybozu-Authorization": self.credentials.auth}
        with _wrap_errors("upload file"):
            async with self._client() as client:
                response = await client.post(
                    FILE_PATH,
                    files={"file": (file_name, content)},
                    headers=headers,
                )
                response.raise_for_status()
                return _decode(response, "fileKey")

    async def download_file(self, file_key: str) -> bytes:
        """Download a file's raw bytes.  Encoding for transport is the caller's job."""
        logger.info("Downloading file with key: %s", file_key)
        with _wrap_errors("download file"):
            async with self._client() as client:
                response = await self._read(client, FILE_PATH, {"fileKey": file_key})
        return response.content
