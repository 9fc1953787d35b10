"""
Shared fixtures.

FakeListStore is an in-memory SharePoint-style list store served through
httpx.MockTransport: item GETs, MERGE writes (with ETag checks), collection
queries, list metadata, the Task Users list and the notification webhook.
"""
import asyncio
import json
import os
import re
from typing import Any, Dict, List, Optional, Tuple

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("AUTO_CREATE_DB", "false")

import httpx
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from worktime.config import settings
from worktime.db import Base
from worktime.models import models  # noqa: F401
from worktime.schemas.timesheets import Actor
from worktime.services.list_store import ListStoreClient

SITE = "https://tenant.sharepoint.com/sites/HHHH/SP"
TIMESHEET_LIST = "11111111-aaaa-bbbb-cccc-000000000001"
TASK_LIST = "22222222-aaaa-bbbb-cccc-000000000002"
WEBHOOK = "https://hooks.test/flow"

ITEM_BY_ID = re.compile(r"/_api/web/lists/getById\('(?P<list>[^']+)'\)/items\((?P<item>\d+)\)$")
ITEMS_BY_ID = re.compile(r"/_api/web/lists/getById\('(?P<list>[^']+)'\)/items$")
ITEM_BY_TITLE = re.compile(r"/_api/web/lists/getByTitle\('(?P<list>[^']+)'\)/items\((?P<item>\d+)\)$")
ITEMS_BY_TITLE = re.compile(r"/_api/web/lists/getByTitle\('(?P<list>[^']+)'\)/items$")
LIST_META = re.compile(r"/_api/web/lists\(guid'(?P<list>[^']+)'\)$")


def run(coro):
    return asyncio.run(coro)


class FakeListStore:
    def __init__(self):
        self.items: Dict[Tuple[str, int], Dict[str, Any]] = {}
        self.versions: Dict[Tuple[str, int], int] = {}
        self.type_tags: Dict[str, str] = {}
        self.echo_type: Dict[str, bool] = {}
        self.users: Dict[int, Dict[str, Any]] = {}
        self.failures: List[Tuple[str, str, int, Optional[str]]] = []
        self.requests: List[httpx.Request] = []
        self.webhook_posts: List[Dict[str, Any]] = []
        self.webhook_status = 202
        self.merge_hook = None

    # ---- seeding ----

    def add_row(self, list_id: str, row_id: int, entries: list, echo_type: bool = True, **fields) -> None:
        self.items[(list_id, row_id)] = {"Id": row_id, "AdditionalTimeEntry": json.dumps(entries), **fields}
        self.versions[(list_id, row_id)] = 1
        self.type_tags.setdefault(list_id, "SP.Data.TaskTimeSheetListNewListItem")
        self.echo_type[list_id] = echo_type

    def add_task(self, list_id: str, task_id: int, total_time: Optional[float] = 0) -> None:
        self.items[(list_id, task_id)] = {"Id": task_id, "TotalTime": total_time}
        self.versions[(list_id, task_id)] = 1
        self.type_tags.setdefault(list_id, "SP.Data.Master_x0020_TasksListItem")
        self.echo_type.setdefault(list_id, True)

    def add_user(self, profile_id: int, user_id: int, title: str, email: str, omt_status=None) -> None:
        self.users[profile_id] = {
            "Id": profile_id,
            "AssingedToUserId": user_id,
            "Title": title,
            "Email": email,
            "OMTStatus": json.dumps(omt_status) if omt_status is not None else None,
            "Item_x0020_Cover": {"Url": f"https://img.test/{user_id}.png"},
        }

    def fail(self, method: str, url_part: str, status: int, text: Optional[str] = None) -> None:
        """Answer matching requests with `status`; `text` replaces the default error body."""
        self.failures.append((method, url_part, status, text))

    # ---- inspection ----

    def entries(self, list_id: str, row_id: int) -> list:
        return json.loads(self.items[(list_id, row_id)]["AdditionalTimeEntry"] or "[]")

    def total_time(self, list_id: str, task_id: int):
        return self.items[(list_id, task_id)]["TotalTime"]

    def omt_status(self, profile_id: int) -> list:
        return json.loads(self.users[profile_id]["OMTStatus"] or "[]")

    def merges(self) -> List[httpx.Request]:
        return [r for r in self.requests if r.headers.get("X-HTTP-Method") == "MERGE"]

    # ---- transport ----

    def _item_payload(self, key, fields: Dict[str, Any]) -> Dict[str, Any]:
        metadata = {"etag": f'"{self.versions[key]}"'}
        if self.echo_type.get(key[0], True):
            metadata["type"] = self.type_tags[key[0]]
        return {**fields, "__metadata": metadata}

    def _merge(self, request: httpx.Request, key, target: Dict[str, Any]) -> httpx.Response:
        # a hook may bump the version to simulate a concurrent writer
        if self.merge_hook is not None:
            self.merge_hook(key)
        if_match = request.headers.get("IF-MATCH")
        if if_match not in ("*", f'"{self.versions[key]}"'):
            return httpx.Response(412, text="The request ETag value does not match the object's ETag value")
        body = json.loads(request.content)
        if not (body.get("__metadata") or {}).get("type"):
            return httpx.Response(400, text="A type name was not specified for the payload")
        target.update({k: v for k, v in body.items() if k != "__metadata"})
        self.versions[key] = self.versions.get(key, 1) + 1
        return httpx.Response(204)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        url = str(request.url)
        method = request.headers.get("X-HTTP-Method") or request.method
        for fail_method, part, status, text in self.failures:
            if fail_method == method and part in url:
                return httpx.Response(status, text=text if text is not None else "simulated failure " + "x" * 300)

        if request.url.host == "hooks.test":
            self.webhook_posts.append(json.loads(request.content))
            return httpx.Response(self.webhook_status, json={})

        path = request.url.path
        match = ITEM_BY_ID.search(path)
        if match:
            key = (match.group("list"), int(match.group("item")))
            if key not in self.items:
                return httpx.Response(404, text="Item does not exist")
            if method == "MERGE":
                return self._merge(request, key, self.items[key])
            return httpx.Response(200, json={"d": self._item_payload(key, self.items[key])})

        match = ITEMS_BY_ID.search(path)
        if match:
            list_id = match.group("list")
            results = [dict(v) for (lid, _), v in sorted(self.items.items()) if lid == list_id]
            return httpx.Response(200, json={"d": {"results": results}})

        match = LIST_META.search(path)
        if match:
            list_id = match.group("list")
            if list_id not in self.type_tags:
                return httpx.Response(404, text="List does not exist")
            return httpx.Response(200, json={"d": {"ListItemEntityTypeFullName": self.type_tags[list_id]}})

        match = ITEM_BY_TITLE.search(path)
        if match:
            profile_id = int(match.group("item"))
            user = self.users.get(profile_id)
            if user is None:
                return httpx.Response(404, text="Item does not exist")
            if method == "MERGE":
                key = ("Task Users", profile_id)
                self.versions.setdefault(key, 1)
                return self._merge(request, key, user)
            return httpx.Response(
                200,
                json={"d": {**user, "__metadata": {"type": "SP.Data.Task_x0020_UsersListItem"}}},
            )

        match = ITEMS_BY_TITLE.search(path)
        if match:
            flt = request.url.params.get("$filter", "")
            email = re.search(r"Email eq '([^']*)'", flt)
            user_id = re.search(r"AssingedToUserId eq (\d+)", flt)
            results = [
                u for u in self.users.values()
                if (email and u["Email"] == email.group(1))
                or (user_id and u["AssingedToUserId"] == int(user_id.group(1)))
            ]
            return httpx.Response(200, json={"d": {"results": results}})

        return httpx.Response(404, text=f"no route for {path}")


def make_entry(**overrides) -> Dict[str, Any]:
    entry = {
        "ID": 1,
        "Id": 1,
        "UniqueId": "u-1",
        "AuthorId": 42,
        "AuthorName": "Staff Person",
        "TaskDate": "10/03/2025",
        "TaskTime": 1.0,
        "TaskTimeInMin": 60,
        "Status": "Suggestion",
        "Description": "Fixing the build",
        "ParentID": 5,
        "MainParentId": 5,
    }
    entry.update(overrides)
    return entry


@pytest.fixture
def store():
    return FakeListStore()


@pytest.fixture
def client(store):
    return ListStoreClient("test-token", transport=httpx.MockTransport(store.handler))


@pytest.fixture
def db():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    Session = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)
    session = Session()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def store_settings(monkeypatch):
    monkeypatch.setattr(settings, "notification_webhook_url", WEBHOOK)
    monkeypatch.setattr(settings, "task_user_site", SITE)
    monkeypatch.setattr(settings, "optimistic_concurrency", False)
    monkeypatch.setattr(settings, "outbox_enabled", True)
    monkeypatch.setattr(
        settings,
        "timesheet_sources_json",
        json.dumps([{"site_url": SITE, "list_id": TIMESHEET_LIST, "task_lists": {"HHHH": TASK_LIST}}]),
    )
    yield


@pytest.fixture
def staff():
    return Actor(Id=8, AssingedToUserId=42, Title="Staff Person", Email="staff@test.com", AuthorImage="https://img.test/42.png")


@pytest.fixture
def lead():
    return Actor(Id=7, AssingedToUserId=10, Title="Lead Person", Email="lead@test.com", AuthorImage="https://img.test/10.png")
