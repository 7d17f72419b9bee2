"""Shared test fakes: HTTP session, clock, browser driver and an in-memory Eseis API."""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone

import pytest

from eseis_auth import EseisConfig
from eseis_client import Attachment, Contract, Document

T0 = datetime(2023, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


# --- HTTP ---------------------------------------------------------------------------------------

class FakeResponse:
    def __init__(self, status_code=200, json_data=None, content=b"", text=None):
        self.status_code = status_code
        self._json = json_data
        self.content = content
        if text is None:
            text = json.dumps(json_data) if json_data is not None else content.decode("latin-1")
        self.text = text

    def json(self):
        if self._json is None:
            raise ValueError("No JSON object could be decoded")
        return self._json


class FakeSession:
    """Records every call and answers with handler(method, url, params, headers, json)."""

    def __init__(self, handler=None):
        self.handler = handler or (lambda method, url, params, headers, payload: FakeResponse(404))
        self.calls = []
        self.closed = False

    def _call(self, method, url, params=None, headers=None, json=None, timeout=None):
        self.calls.append({
            "method": method,
            "url": url,
            "params": dict(params or {}),
            "headers": dict(headers or {}),
            "json": json,
            "timeout": timeout,
        })
        result = self.handler(method, url, params or {}, headers or {}, json)
        if isinstance(result, Exception):
            raise result
        return result

    def get(self, url, params=None, headers=None, timeout=None):
        return self._call("GET", url, params=params, headers=headers, timeout=timeout)

    def post(self, url, json=None, headers=None, timeout=None):
        return self._call("POST", url, headers=headers, json=json, timeout=timeout)

    def close(self):
        self.closed = True


def token_payload(access_token="token-1", created_at=T0, expires_in=7200):
    return {
        "access_token": access_token,
        "created_at": int(created_at.timestamp()),
        "expires_in": expires_in,
        "refresh_token": "refresh-" + access_token,
        "token_type": "Bearer",
    }


class FakeClock:
    def __init__(self, now=T0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def config():
    return EseisConfig(
        client_id="client-id",
        username="owner@example.com",
        password="secret",
        out_dir=None,
        base_url="https://api.example.com",
        base_web_url="https://web.example.com",
    )


@pytest.fixture
def clock():
    return FakeClock()


# --- Browser ------------------------------------------------------------------------------------

class FakeDriver:
    """Records browser operations; fail_on maps a selector or url to the exception to raise."""

    def __init__(self, pdf=b"%PDF-1.4 fake", fail_on=None):
        self.pdf = pdf
        self.fail_on = dict(fail_on or {})
        self.calls = []
        self.closed = False
        self.on_navigate = None

    def _check(self, key):
        if key in self.fail_on:
            raise self.fail_on[key]

    def set_viewport(self, width, height):
        self.calls.append(("set_viewport", width, height))

    def navigate(self, url):
        self.calls.append(("navigate", url))
        self._check(url)
        if self.on_navigate:
            self.on_navigate(url)

    def wait_for(self, selector, state="attached"):
        self.calls.append(("wait_for", selector, state))
        self._check(selector)

    def type_and_submit(self, selector, text):
        self.calls.append(("type_and_submit", selector, text))

    def evaluate(self, script):
        self.calls.append(("evaluate", script))
        return True

    def pause(self, seconds):
        self.calls.append(("pause", seconds))

    def print_to_pdf(self):
        self.calls.append(("print_to_pdf",))
        return self.pdf

    def close(self):
        self.closed = True

    def count(self, name):
        return sum(1 for call in self.calls if call[0] == name)


# --- In-memory Eseis API -------------------------------------------------------------------------

def paged(items, page, per_page=2):
    start = (page - 1) * per_page
    return list(items[start:start + per_page])


def document(uuid, name, updated_at=T0, doc_id=1):
    return Document.from_json({
        "id": doc_id,
        "uuid": uuid,
        "display_name": name,
        "updated_at": updated_at.isoformat(),
    })


def attachment(att_id, name, content_type="application/pdf", updated_at=T0):
    return Attachment.from_json({
        "id": att_id,
        "file_url": f"https://files.example.com/{att_id}",
        "source_file_name": name,
        "source_content_type": content_type,
        "source_updated_at": updated_at.isoformat(),
    })


class FakeEseisClient:
    """Duck-typed EseisClient serving a small account from memory."""

    def __init__(self):
        self.contracts = [Contract(id=7, display_name="Résidence / Les Tilleuls ", place_id=70)]
        self.contract_folders = []
        self.contract_documents = {}
        self.coownership_folders = []
        self.coownership_documents = {}
        self.maintenance_categories = []
        self.maintenance_details = {}
        self.reports = []
        self.forum_topics = []
        self.topic_posts = {}
        self.fiscal_years = []
        self.budgets = {}
        self.entries = {}
        self.documents = {}
        self.attachments = {}
        self.document_calls = []
        self.attachment_calls = []
        self.page_calls = []
        self.fail_documents = {}

    def get_contracts(self):
        return list(self.contracts)

    def get_contract_folders(self, contract_id, page):
        self.page_calls.append(("contract_folders", page))
        return paged(self.contract_folders, page)

    def get_contract_documents(self, contract_id, folder_id, page):
        self.page_calls.append(("contract_documents", folder_id, page))
        return paged(self.contract_documents.get(folder_id, []), page)

    def get_coownership_folders(self, place_id, page):
        return paged(self.coownership_folders, page)

    def get_coownership_documents(self, place_id, folder_id, page):
        return paged(self.coownership_documents.get(folder_id, []), page)

    def get_maintenance_contract_categories(self, place_id):
        return list(self.maintenance_categories)

    def get_maintenance_contract_details(self, maintenance_contract_id):
        return self.maintenance_details[maintenance_contract_id]

    def get_reports(self, place_id, page):
        return paged(self.reports, page)

    def get_forum_topics(self, place_id, page):
        return paged(self.forum_topics, page)

    def get_all_topic_posts(self, place_id, topic_id):
        return list(self.topic_posts.get(topic_id, []))

    def get_fiscal_years(self, place_id):
        return list(self.fiscal_years)

    def get_budgets(self, place_id, fiscal_year_id):
        return list(self.budgets.get(fiscal_year_id, []))

    def get_account_place_entries(self, budget_id):
        return list(self.entries.get(budget_id, []))

    def get_document(self, uuid):
        self.document_calls.append(uuid)
        if uuid in self.fail_documents:
            raise self.fail_documents[uuid]
        return self.documents.get(uuid, f"pdf:{uuid}".encode())

    def get_attachment(self, url):
        self.attachment_calls.append(url)
        return self.attachments.get(url, f"bytes:{url}".encode())


@pytest.fixture
def fake_client():
    return FakeEseisClient()

