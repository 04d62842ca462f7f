"""Shared fixtures: an in-memory kintone served through httpx.MockTransport."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any

import httpx
import pytest

from core.models import KintoneCredentials
from core.repository import KintoneRepository

_PAGING = re.compile(r"^(?P<filter>.*?)\s*limit (?P<limit>\d+) offset (?P<offset>\d+)\s*$")
_EQUALS = re.compile(r'(\w+)\s*=\s*"([^"]*)"')


@dataclass
class SentRequest:
    """What the fake saw: effective verb, path, decoded JSON body, headers."""

    method: str
    path: str
    body: Any
    headers: httpx.Headers


@dataclass
class StoredRecord:
    fields: dict[str, Any]
    revision: int = 1
    comments: list[dict[str, Any]] = field(default_factory=list)


def _error(status: int, code: str, message: str) -> httpx.Response:
    return httpx.Response(status, json={"code": code, "id": "fake", "message": message})


class FakeKintone:
    """Just enough of the kintone REST API to exercise the repository.

    Records are kept per app in insertion order.  Search supports
    `code = "value"` conditions joined by `and`, plus the trailing
    `limit N offset M` clause.  `fail_on` makes the n-th request to a
    path (1-based) answer 500 so batch aborts can be tested.
    """

    def __init__(self) -> None:
        self.records: dict[int, dict[int, StoredRecord]] = {}
        self.apps: dict[int, dict[str, Any]] = {}
        self.files: dict[str, bytes] = {}
        self.actions: dict[str, str] = {"Start": "In progress", "Complete": "Completed"}
        self.requests: list[SentRequest] = []
        self.fail_on: dict[str, int] = {}
        self._next_id = 1
        self._next_comment = 1

    # -- setup helpers --------------------------------------------------------
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def seed(self, app_id: int, rows: list[dict[str, Any]]) -> list[int]:
        """Store plain {code: value} rows as kintone records; return their ids."""
        ids = []
        for row in rows:
            ids.append(self._store(app_id, {k: {"value": v} for k, v in row.items()}))
        return ids

    def add_app(self, app_id: int, name: str, code: str = "", space_id: str | None = None) -> None:
        self.apps[app_id] = {
            "appId": str(app_id),
            "code": code,
            "name": name,
            "spaceId": space_id,
        }

    def sent(self, path: str) -> list[SentRequest]:
        return [r for r in self.requests if r.path == path]

    # -- request handling -----------------------------------------------------
    def handle(self, request: httpx.Request) -> httpx.Response:
        method = request.method
        if method == "POST" and request.headers.get("X-HTTP-Method-Override") == "GET":
            method = "GET"
        path = request.url.path
        is_json = request.headers.get("Content-Type", "").startswith("application/json")
        body = json.loads(request.content) if is_json and request.content else None
        self.requests.append(SentRequest(method, path, body, request.headers))

        if "X-Cybozu-Authorization" not in request.headers:
            return _error(401, "CB_WA01", "Password authentication failed.")

        failing = self.fail_on.get(path)
        if failing is not None and len(self.sent(path)) == failing:
            return _error(500, "CB_IJ01", "Internal error.")

        if (method, path) == ("POST", "/k/v1/file.json"):
            file_key = f"file-{len(self.files) + 1}"
            self.files[file_key] = request.content
            return httpx.Response(200, json={"fileKey": file_key})

        route = {
            ("GET", "/k/v1/record.json"): self._get_record,
            ("POST", "/k/v1/record.json"): self._post_record,
            ("PUT", "/k/v1/record.json"): self._put_record,
            ("GET", "/k/v1/records.json"): self._get_records,
            ("POST", "/k/v1/records.json"): self._post_records,
            ("PUT", "/k/v1/records.json"): self._put_records,
            ("GET", "/k/v1/record/comments.json"): self._get_comments,
            ("POST", "/k/v1/record/comment.json"): self._post_comment,
            ("PUT", "/k/v1/record/status.json"): self._put_status,
            ("PUT", "/k/v1/records/status.json"): self._put_statuses,
            ("GET", "/k/v1/app.json"): self._get_app,
            ("GET", "/k/v1/apps.json"): self._get_apps,
            ("GET", "/k/v1/app/form/fields.json"): self._get_form_fields,
            ("GET", "/k/v1/file.json"): self._get_file,
        }.get((method, path))
        if route is None:
            return _error(404, "CB_NO02", f"No route for {method} {path}.")
        return route(body)

    # -- storage --------------------------------------------------------------
    def _store(self, app_id: int, fields: dict[str, Any]) -> int:
        record_id = self._next_id
        self._next_id += 1
        self.records.setdefault(app_id, {})[record_id] = StoredRecord(dict(fields))
        return record_id

    def _lookup(self, app_id: int, record_id: Any) -> StoredRecord | None:
        return self.records.get(int(app_id), {}).get(int(record_id))

    @staticmethod
    def _render(record_id: int, stored: StoredRecord) -> dict[str, Any]:
        return {
            **stored.fields,
            "$id": {"type": "__ID__", "value": str(record_id)},
            "$revision": {"type": "__REVISION__", "value": str(stored.revision)},
        }

    def _update(self, app_id: int, item: dict[str, Any]) -> dict[str, Any] | httpx.Response:
        stored = self._lookup(app_id, item["id"])
        if stored is None:
            return _error(404, "GAIA_RE01", "The specified record was not found.")
        if "revision" in item and int(item["revision"]) != stored.revision:
            return _error(409, "GAIA_CO02", "The revision is not the latest.")
        stored.fields.update(item.get("record", {}))
        stored.revision += 1
        return {"id": str(item["id"]), "revision": str(stored.revision)}

    # -- records --------------------------------------------------------------
    def _get_record(self, body: dict) -> httpx.Response:
        stored = self._lookup(body["app"], body["id"])
        if stored is None:
            return _error(404, "GAIA_RE01", "The specified record was not found.")
        return httpx.Response(200, json={"record": self._render(int(body["id"]), stored)})

    def _post_record(self, body: dict) -> httpx.Response:
        record_id = self._store(body["app"], body.get("record", {}))
        return httpx.Response(200, json={"id": str(record_id), "revision": "1"})

    def _put_record(self, body: dict) -> httpx.Response:
        outcome = self._update(body["app"], body)
        if isinstance(outcome, httpx.Response):
            return outcome
        return httpx.Response(200, json={"revision": outcome["revision"]})

    def _get_records(self, body: dict) -> httpx.Response:
        match = _PAGING.match(body.get("query", ""))
        if match is None:
            return _error(400, "CB_VA01", "Query must end with a paging clause.")
        limit, offset = int(match["limit"]), int(match["offset"])
        if limit > 500:
            return _error(400, "CB_VA01", "limit must be 500 or less.")

        conditions = _EQUALS.findall(match["filter"])
        rows = [
            self._render(record_id, stored)
            for record_id, stored in self.records.get(int(body["app"]), {}).items()
            if all(stored.fields.get(code, {}).get("value") == value for code, value in conditions)
        ]
        page = rows[offset:offset + limit]
        if body.get("fields"):
            wanted = set(body["fields"])
            page = [{k: v for k, v in row.items() if k in wanted} for row in page]
        total = str(len(rows)) if body.get("totalCount") else None
        return httpx.Response(200, json={"records": page, "totalCount": total})

    def _post_records(self, body: dict) -> httpx.Response:
        if len(body["records"]) > 100:
            return _error(400, "CB_VA01", "records must be 100 or fewer.")
        ids = [str(self._store(body["app"], fields)) for fields in body["records"]]
        return httpx.Response(200, json={"ids": ids, "revisions": ["1"] * len(ids)})

    def _put_records(self, body: dict) -> httpx.Response:
        if len(body["records"]) > 100:
            return _error(400, "CB_VA01", "records must be 100 or fewer.")
        results = []
        for item in body["records"]:
            outcome = self._update(body["app"], item)
            if isinstance(outcome, httpx.Response):
                return outcome
            results.append(outcome)
        return httpx.Response(200, json={"records": results})

    # -- comments -------------------------------------------------------------
    def _get_comments(self, body: dict) -> httpx.Response:
        stored = self._lookup(body["app"], body["record"])
        if stored is None:
            return _error(404, "GAIA_RE01", "The specified record was not found.")
        comments = list(stored.comments)
        if body.get("order", "desc") == "desc":
            comments.reverse()
        start = body.get("offset", 0)
        page = comments[start:start + body.get("limit", 10)]
        return httpx.Response(200, json={"comments": page, "older": False, "newer": False})

    def _post_comment(self, body: dict) -> httpx.Response:
        stored = self._lookup(body["app"], body["record"])
        if stored is None:
            return _error(404, "GAIA_RE01", "The specified record was not found.")
        comment_id = str(self._next_comment)
        self._next_comment += 1
        stored.comments.append({
            "id": comment_id,
            "text": body["comment"]["text"],
            "mentions": body["comment"].get("mentions", []),
        })
        return httpx.Response(200, json={"id": comment_id})

    # -- status ---------------------------------------------------------------
    def _apply_action(self, app_id: int, item: dict) -> dict[str, Any] | httpx.Response:
        if item["action"] not in self.actions:
            return _error(400, "GAIA_IL03", f"Action {item['action']!r} cannot be run.")
        return self._update(
            app_id,
            {"id": item["id"], "record": {"Status": {"value": self.actions[item["action"]]}}},
        )

    def _put_status(self, body: dict) -> httpx.Response:
        outcome = self._apply_action(body["app"], body)
        if isinstance(outcome, httpx.Response):
            return outcome
        return httpx.Response(200, json={"revision": outcome["revision"]})

    def _put_statuses(self, body: dict) -> httpx.Response:
        if len(body["records"]) > 100:
            return _error(400, "CB_VA01", "records must be 100 or fewer.")
        results = []
        for item in body["records"]:
            outcome = self._apply_action(body["app"], item)
            if isinstance(outcome, httpx.Response):
                return outcome
            results.append(outcome)
        return httpx.Response(200, json={"records": results})

    # -- apps -----------------------------------------------------------------
    def _get_app(self, body: dict) -> httpx.Response:
        app = self.apps.get(int(body["id"]))
        if app is None:
            return _error(404, "GAIA_AP01", "The app does not exist.")
        return httpx.Response(200, json=app)

    def _get_apps(self, body: dict) -> httpx.Response:
        apps = list(self.apps.values())
        if "ids" in body:
            apps = [a for a in apps if int(a["appId"]) in body["ids"]]
        if "codes" in body:
            apps = [a for a in apps if a["code"] in body["codes"]]
        if "name" in body:
            apps = [a for a in apps if body["name"].lower() in a["name"].lower()]
        if "spaceIds" in body:
            apps = [a for a in apps if a["spaceId"] in [str(s) for s in body["spaceIds"]]]
        offset = body.get("offset", 0)
        return httpx.Response(200, json={"apps": apps[offset:offset + body.get("limit", 100)]})

    def _get_form_fields(self, body: dict) -> httpx.Response:
        if int(body["app"]) not in self.apps:
            return _error(404, "GAIA_AP01", "The app does not exist.")
        label = "Title" if body.get("lang", "en") == "en" else "タイトル"
        properties = {"Title": {"type": "SINGLE_LINE_TEXT", "code": "Title", "label": label}}
        return httpx.Response(200, json={"properties": properties, "revision": "1"})

    # -- files ----------------------------------------------------------------
    def _get_file(self, body: dict) -> httpx.Response:
        content = self.files.get(body["fileKey"])
        if content is None:
            return _error(404, "GAIA_BL01", "The file does not exist.")
        return httpx.Response(200, content=content)


@pytest.fixture
def credentials() -> KintoneCredentials:
    return KintoneCredentials(domain="example.cybozu.com", username="alice", password="secret")


@pytest.fixture
def kintone() -> FakeKintone:
    return FakeKintone()


@pytest.fixture
def repository(credentials: KintoneCredentials, kintone: FakeKintone) -> KintoneRepository:
    return KintoneRepository(credentials, transport=kintone.transport())


@pytest.fixture
def repository_with(credentials: KintoneCredentials):
    """Factory for a repository backed by a one-off MockTransport handler."""

    def build(handler) -> KintoneRepository:
        return KintoneRepository(credentials, transport=httpx.MockTransport(handler))

    return build
