# =============================================================================
# tools/mcp_server.py  —  FastMCP Tool Server (ALL kintone tools in one place)
# =============================================================================
#
# WHAT THIS FILE DOES:
#   Defines every MCP tool the agent can call.  Each tool is a thin wrapper
#   around ONE KintoneRepository method: it logs the call, forwards the
#   arguments, converts the result to a dict and returns it.
#
# HOW IT WORKS (the flow):
#   1. The agent calls a tool by name via MCP (e.g., "search_records")
#   2. An unknown tool name is answered with a JSON-RPC METHOD_NOT_FOUND
#      error; otherwise FastMCP validates the arguments against the
#      function signature
#   3. The function calls exactly one repository method
#   4. The repository talks to kintone (one or more HTTP round trips)
#   5. The result goes back as a dict; a KintoneError goes back as a
#      ToolError carrying the "Failed to <operation>: ..." message
#
# TOOL NAMING CONVENTIONS:
#   - get_*    → Read-only retrieval (safe to retry)
#   - search_* → Query with filters (safe to retry)
#   - create_* / add_*    → Create new records or comments
#   - update_* → Change records or their workflow status
#   - upload_* / download_* → Files
#
# RUNNING THIS SERVER:
#   a) Via the entry point:  python main.py   (validates KINTONE_* first)
#   b) Standalone:           python -m tools.mcp_server
# =============================================================================

import base64
import json
import logging
import sys
from dataclasses import asdict
from typing import Any, Literal

from fastmcp import FastMCP
from fastmcp.exceptions import ToolError
from mcp.shared.exceptions import McpError
from mcp.types import METHOD_NOT_FOUND, CallToolRequest, ErrorData

# The tools layer depends on core/ and nothing else.
from core.config import load_credentials
from core.errors import KintoneError
from core.repository import KintoneRepository

logger = logging.getLogger("kintone_mcp")

# =============================================================================
# Logging helpers
# =============================================================================
# Everything is logged to STDERR: STDOUT is the MCP stdio transport, and a
# stray log line there would corrupt the JSON-RPC stream.  main.py installs
# the handler; these helpers only add colors.
#   - CYAN for incoming requests (tool name + parameters)
#   - GREEN for response JSON
#   - YELLOW for intermediate status messages
#   - RED for failures
# =============================================================================
_CYAN = "\033[36m"
_GREEN = "\033[32m"
_YELLOW = "\033[33m"
_RED = "\033[31m"
_RESET = "\033[0m"

# Responses larger than this are logged truncated.
_MAX_LOGGED_RESPONSE = 2000


def _log_request(tool_name: str, **params) -> None:
    """Log an incoming tool call with its parameters in CYAN."""
    param_str = ", ".join(f"{k}={v!r}" for k, v in params.items())
    logger.info(f"{_CYAN}{tool_name} called with: {param_str}{_RESET}")


def _log_status(message: str) -> None:
    """Log an intermediate status message in YELLOW."""
    logger.info(f"{_YELLOW}  → {message}{_RESET}")


def _log_response(tool_name: str, result: dict) -> dict:
    """Log the tool response as compact JSON in GREEN, then return it."""
    text = json.dumps(result, separators=(",", ":"), ensure_ascii=False, default=str)
    if len(text) > _MAX_LOGGED_RESPONSE:
        text = text[:_MAX_LOGGED_RESPONSE] + "…"
    logger.info(f"{_GREEN}  ← {tool_name} response: {text}{_RESET}")
    return result


def _tool_error(tool_name: str, error: Exception) -> ToolError:
    """Convert a repository failure into the error FastMCP reports to the client."""
    logger.error(f"{_RED}  ✗ {tool_name} failed: {error}{_RESET}")
    return ToolError(str(error))


# =============================================================================
# Repository wiring
# =============================================================================
# main.py builds the repository at startup (so missing KINTONE_* settings
# stop the process before it starts serving) and hands it over with
# configure().  When the module is run on its own, the repository is
# built from the environment on first use instead.
# =============================================================================
_repository: KintoneRepository | None = None


def configure(repository: KintoneRepository | None) -> None:
    """Install the repository every tool call goes through."""
    global _repository
    _repository = repository


def _get_repository() -> KintoneRepository:
    global _repository
    if _repository is None:
        _repository = KintoneRepository(load_credentials())
    return _repository


# =============================================================================
# Create the FastMCP server instance
# =============================================================================
mcp = FastMCP("kintone-mcp-server")


def _reject_unknown_tools(server: FastMCP) -> None:
    """Answer calls to unregistered tools with a METHOD_NOT_FOUND protocol error.

    A failing tool stays an error result (ToolError on the client); an
    unknown name becomes McpError with code -32601 before any tool runs.
    """
    low_level = server._mcp_server
    call_tool = low_level.request_handlers[CallToolRequest]

    async def handler(request: CallToolRequest):
        name = request.params.name
        if name not in await server.get_tools():
            logger.error(f"{_RED}  ✗ unknown tool requested: {name}{_RESET}")
            raise McpError(ErrorData(code=METHOD_NOT_FOUND, message=f"Unknown tool: {name}"))
        return await call_tool(request)

    low_level.request_handlers[CallToolRequest] = handler


_reject_unknown_tools(mcp)


# =============================================================================
# RECORDS: read
# =============================================================================
@mcp.tool()
async def get_record(app_id: int, record_id: int) -> dict:
    """Get a single record from a kintone app.

    Args:
        app_id: The kintone app ID.
        record_id: The record ID.

    Returns:
        A dict with app_id, record_id and fields (field code → {type, value}).
    """
    _log_request("get_record", app_id=app_id, record_id=record_id)
    try:
        record = await _get_repository().get_record(app_id, record_id)
    except KintoneError as e:
        raise _tool_error("get_record", e) from e
    return _log_response("get_record", asdict(record))


@mcp.tool()
async def search_records(
    app_id: int,
    query: str | None = None,
    fields: list[str] | None = None,
    limit: int = 100,
    offset: int = 0,
) -> dict:
    """Search records in a kintone app, one page at a time.

    WHEN TO CALL THIS: When you need a bounded slice of records, or want
    to know how many records match before fetching them all.

    Args:
        app_id: The kintone app ID.
        query: kintone query expression, e.g. 'Status = "Open"'.
               Leave empty to match every record.
        fields: Field codes to return.  Empty returns every field.
        limit: Records per page (default 100, kintone maximum 500).
        offset: Index of the first record to return (default 0).

    Returns:
        A dict with:
          - records: The page of records (field code → {type, value})
          - totalCount: Number of records matching the query overall
          - nextOffset: Offset to pass to fetch the following page
    """
    _log_request("search_records", app_id=app_id, query=query,
                 fields=fields, limit=limit, offset=offset)
    try:
        result = await _get_repository().search_records(
            app_id, query, fields or [], limit, offset
        )
    except KintoneError as e:
        raise _tool_error("search_records", e) from e
    _log_status(f"Got {len(result.records)} of {result.total_count} records")
    return _log_response("search_records", {
        "records": [r.fields for r in result.records],
        "totalCount": result.total_count,
        "nextOffset": result.next_offset,
    })


@mcp.tool()
async def get_all_records(
    app_id: int,
    query: str | None = None,
    fields: list[str] | None = None,
) -> dict:
    """Get EVERY record matching a query, paging through kintone automatically.

    WHEN TO CALL THIS: Only when you genuinely need the full result set.
    Prefer search_records with a narrow query and a `fields` list for
    large apps; this tool fetches 500 records per request until done.

    Args:
        app_id: The kintone app ID.
        query: kintone query expression.  Leave empty for all records.
        fields: Field codes to return.  Empty returns every field.

    Returns:
        A dict with records (list of field maps) and count.
    """
    _log_request("get_all_records", app_id=app_id, query=query, fields=fields)
    try:
        records = await _get_repository().get_all_records(app_id, query, fields or [])
    except KintoneError as e:
        raise _tool_error("get_all_records", e) from e
    return _log_response("get_all_records", {
        "records": [r.fields for r in records],
        "count": len(records),
    })


# =============================================================================
# RECORDS: write
# =============================================================================
@mcp.tool()
async def create_record(app_id: int, fields: dict[str, Any]) -> dict:
    """Create a new record in a kintone app.

    Args:
        app_id: The kintone app ID.
        fields: Field values keyed by field code,
                e.g. {"Title": {"value": "Hello"}}.

    Returns:
        A dict with the new record_id.
    """
    _log_request("create_record", app_id=app_id, fields=fields)
    try:
        record_id = await _get_repository().create_record(app_id, fields)
    except KintoneError as e:
        raise _tool_error("create_record", e) from e
    return _log_response("create_record", {"record_id": record_id})


@mcp.tool()
async def add_records(app_id: int, records: list[dict[str, Any]]) -> dict:
    """Create many records at once.

    Any number of records is accepted; they are sent to kintone in
    batches of 100, in order.  If a batch fails, earlier batches have
    already been saved.

    Args:
        app_id: The kintone app ID.
        records: List of field maps, one per new record.

    Returns:
        A dict with record_ids in the same order as `records`.
    """
    _log_request("add_records", app_id=app_id, count=len(records))
    try:
        record_ids = await _get_repository().add_records(app_id, records)
    except KintoneError as e:
        raise _tool_error("add_records", e) from e
    return _log_response("add_records", {"record_ids": record_ids})


@mcp.tool()
async def update_record(
    app_id: int,
    record_id: int,
    fields: dict[str, Any],
    revision: int | None = None,
) -> dict:
    """Update an existing record.

    Args:
        app_id: The kintone app ID.
        record_id: The record ID.
        fields: Field values to change, keyed by field code.
        revision: The revision you last read.  If given and the record has
                  changed since, the update is rejected (conflict).
                  Omit to overwrite unconditionally.

    Returns:
        A dict with success and the record's new revision.
    """
    _log_request("update_record", app_id=app_id, record_id=record_id,
                 fields=fields, revision=revision)
    try:
        new_revision = await _get_repository().update_record(
            app_id, record_id, fields, revision
        )
    except KintoneError as e:
        raise _tool_error("update_record", e) from e
    return _log_response("update_record", {"success": True, "revision": new_revision})


@mcp.tool()
async def update_records(app_id: int, updates: list[dict[str, Any]]) -> dict:
    """Update many records at once (sent in batches of 100, in order).

    Args:
        app_id: The kintone app ID.
        updates: One dict per record with "id", "record" (field values)
                 and optionally "revision".

    Returns:
        A dict with results: one {id, revision} per update, in order.
    """
    _log_request("update_records", app_id=app_id, count=len(updates))
    try:
        results = await _get_repository().update_records(app_id, updates)
    except KintoneError as e:
        raise _tool_error("update_records", e) from e
    return _log_response("update_records", {"results": results})


# =============================================================================
# COMMENTS
# =============================================================================
@mcp.tool()
async def get_comments(
    app_id: int,
    record_id: int,
    order: Literal["asc", "desc"] = "desc",
    offset: int = 0,
    limit: int = 10,
) -> dict:
    """Get the comments posted on a record.

    Args:
        app_id: The kintone app ID.
        record_id: The record ID.
        order: "desc" (newest first, default) or "asc".
        offset: Index of the first comment to return.
        limit: Number of comments (kintone maximum 10).
    """
    _log_request("get_comments", app_id=app_id, record_id=record_id,
                 order=order, offset=offset, limit=limit)
    try:
        comments = await _get_repository().get_comments(
            app_id, record_id, order, offset, limit
        )
    except KintoneError as e:
        raise _tool_error("get_comments", e) from e
    return _log_response("get_comments", {"comments": comments})


@mcp.tool()
async def add_comment(
    app_id: int,
    record_id: int,
    text: str,
    mentions: list[dict[str, Any]] | None = None,
) -> dict:
    """Post a comment on a record.

    Args:
        app_id: The kintone app ID.
        record_id: The record ID.
        text: Comment body.
        mentions: Optional list of {"code": ..., "type": "USER"|"GROUP"|"ORGANIZATION"}.
    """
    _log_request("add_comment", app_id=app_id, record_id=record_id,
                 text=text, mentions=mentions)
    try:
        comment_id = await _get_repository().add_comment(
            app_id, record_id, text, mentions or []
        )
    except KintoneError as e:
        raise _tool_error("add_comment", e) from e
    return _log_response("add_comment", {"comment_id": comment_id})


# =============================================================================
# STATUS (process management)
# =============================================================================
# The workflow is configured in kintone.  These tools do not check action
# names or the record's current status; kintone does, and its rejection is
# returned as the tool error.
# =============================================================================
@mcp.tool()
async def update_status(
    app_id: int,
    record_id: int,
    action: str,
    assignee: str | None = None,
) -> dict:
    """Run a process-management action on a record.

    Args:
        app_id: The kintone app ID.
        record_id: The record ID.
        action: The action name exactly as configured in the app.
        assignee: Login name of the next assignee, when the step needs one.
    """
    _log_request("update_status", app_id=app_id, record_id=record_id,
                 action=action, assignee=assignee)
    try:
        result = await _get_repository().update_status(app_id, record_id, action, assignee)
    except KintoneError as e:
        raise _tool_error("update_status", e) from e
    return _log_response("update_status", result)


@mcp.tool()
async def update_statuses(app_id: int, updates: list[dict[str, Any]]) -> dict:
    """Run process-management actions on many records (batches of 100).

    Args:
        app_id: The kintone app ID.
        updates: One dict per record with "id", "action" and optionally
                 "assignee" and "revision".
    """
    _log_request("update_statuses", app_id=app_id, count=len(updates))
    try:
        results = await _get_repository().update_statuses(app_id, updates)
    except KintoneError as e:
        raise _tool_error("update_statuses", e) from e
    return _log_response("update_statuses", {"results": results})


# =============================================================================
# APPS
# =============================================================================
@mcp.tool()
async def get_app(app_id: int) -> dict:
    """Get an app's basic information (name, code, space, creator...)."""
    _log_request("get_app", app_id=app_id)
    try:
        app = await _get_repository().get_app(app_id)
    except KintoneError as e:
        raise _tool_error("get_app", e) from e
    return _log_response("get_app", app)


@mcp.tool()
async def get_apps(
    ids: list[int] | None = None,
    codes: list[str] | None = None,
    name: str | None = None,
    spaceIds: list[int] | None = None,
    limit: int = 100,
    offset: int = 0,
) -> dict:
    """List apps, optionally filtered.

    Args:
        ids: App IDs to include.
        codes: App codes to include.
        name: Part of the app name (case-insensitive partial match).
        spaceIds: Space IDs to include.
        limit: Number of apps (default 100, maximum 100).
        offset: Index of the first app to return.
    """
    _log_request("get_apps", ids=ids, codes=codes, name=name,
                 spaceIds=spaceIds, limit=limit, offset=offset)
    try:
        apps = await _get_repository().get_apps(ids, codes, name, spaceIds, limit, offset)
    except KintoneError as e:
        raise _tool_error("get_apps", e) from e
    return _log_response("get_apps", apps)


@mcp.tool()
async def get_apps_info(app_name: str) -> dict:
    """Find apps by (part of) their name.

    WHEN TO CALL THIS: When the user names an app but you don't know its
    ID.  Use the returned appId with the record tools.

    Args:
        app_name: The app name or any part of it.
    """
    _log_request("get_apps_info", app_name=app_name)
    try:
        apps = await _get_repository().get_apps(name=app_name, limit=100, offset=0)
    except KintoneError as e:
        raise _tool_error("get_apps_info", e) from e
    return _log_response("get_apps_info", apps)


@mcp.tool()
async def get_form_fields(app_id: int, lang: str | None = None) -> dict:
    """Get the field definitions of an app, keyed by field code.

    WHEN TO CALL THIS: Before creating or updating records, to learn the
    field codes and types the app expects.

    Args:
        app_id: The kintone app ID.
        lang: Label language: "ja", "en", "zh" or "user".
    """
    _log_request("get_form_fields", app_id=app_id, lang=lang)
    try:
        properties = await _get_repository().get_form_fields(app_id, lang)
    except KintoneError as e:
        raise _tool_error("get_form_fields", e) from e
    return _log_response("get_form_fields", properties)


# =============================================================================
# FILES
# =============================================================================
# MCP results are text, so file contents travel base64-encoded in both
# directions.  Decoding/encoding happens at this boundary.
# =============================================================================
@mcp.tool()
async def upload_file(file_name: str, file_data: str) -> dict:
    """Upload a file to kintone and get a file key for an attachment field.

    Args:
        file_name: The name to store the file under.
        file_data: The file contents, base64-encoded.

    Returns:
        A dict with file_key.  Put it in an attachment field via
        create_record / update_record: {"Attachment": {"value": [{"fileKey": ...}]}}.
    """
    _log_request("upload_file", file_name=file_name, size=len(file_data))
    try:
        file_key = await _get_repository().upload_file(file_name, file_data)
    except (KintoneError, ValueError) as e:
        raise _tool_error("upload_file", e) from e
    return _log_response("upload_file", {"file_key": file_key})


@mcp.tool()
async def download_file(file_key: str) -> dict:
    """Download a file attached to a record.

    Args:
        file_key: The fileKey from an attachment field of a record.

    Returns:
        A dict with file_key, size (bytes) and data (base64-encoded contents).
    """
    _log_request("download_file", file_key=file_key)
    try:
        content = await _get_repository().download_file(file_key)
    except KintoneError as e:
        raise _tool_error("download_file", e) from e
    _log_status(f"Downloaded {len(content)} bytes")
    return _log_response("download_file", {
        "file_key": file_key,
        "size": len(content),
        "data": base64.b64encode(content).decode("ascii"),
    })


# =============================================================================
# Server entry point
# =============================================================================
if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [MCP] %(message)s",
        datefmt="%H:%M:%S",
        stream=sys.stderr,
    )
    mcp.run()
