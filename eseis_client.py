"""
Eseis API client.

Thin wrappers around the REST endpoints used by the sync, plus the generic
page-by-page collector that walks every paginated collection.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterator, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Generic, TypeVar

import requests

from eseis_auth import REQUEST_TIMEOUT, EseisConfig, TokenAuthority
from eseis_errors import AuthError, DecodeError, TransportError

logger = logging.getLogger(__name__)

SERGIC_OFFER = "ESE"

# Query parameters never written to the logs
SECRET_PARAMS = frozenset({"access_token"})

T = TypeVar("T")


def redact_params(params: dict[str, Any] | None) -> dict[str, Any] | None:
    if not params:
        return params
    return {key: "***" if key in SECRET_PARAMS else value for key, value in params.items()}


@dataclass
class ResourcePage(Generic[T]):
    """One page of a collection and the 1-based index that produced it."""

    index: int
    items: Sequence[T]


def iter_pages(fetch_page: Callable[[int], Sequence[T]]) -> Iterator[ResourcePage[T]]:
    """
    Yield pages 1, 2, 3... until the server returns an empty one.

    The empty page is the end-of-collection marker and is not yielded.
    Errors from fetch_page propagate and end the traversal.
    """
    index = 1
    while True:
        items = fetch_page(index)
        if not items:
            return
        yield ResourcePage(index, items)
        index += 1


def collect_pages(fetch_page: Callable[[int], Sequence[T]]) -> Iterator[T]:
    """Lazily yield every item of a paginated collection, in server order."""
    for page in iter_pages(fetch_page):
        yield from page.items


def parse_timestamp(value: Any) -> datetime:
    """Parse an API timestamp; naive values are taken as UTC."""
    if isinstance(value, datetime):
        parsed = value
    else:
        if not isinstance(value, str) or not value:
            raise ValueError(f"invalid timestamp: {value!r}")
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _decode(cls, data: Any):
    try:
        return cls.from_json(data)
    except (KeyError, TypeError, ValueError) as e:
        raise DecodeError(f"Failed to decode {cls.__name__}: {e!r}") from e


def _decode_list(cls, data: Any) -> list:
    if not isinstance(data, list):
        raise DecodeError(f"Expected a JSON array of {cls.__name__}, got {type(data).__name__}")
    return [_decode(cls, element) for element in data]


@dataclass
class Contract:
    id: int
    display_name: str
    place_id: int
    raw: dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> Contract:
        return cls(
            id=int(data["id"]),
            display_name=str(data["display_name"]),
            place_id=int(data["place_id"]),
            raw=data,
        )


@dataclass
class Folder:
    id: int
    display_name: str
    documents_count: int = 0
    raw: dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> Folder:
        return cls(
            id=int(data["id"]),
            display_name=str(data["display_name"]),
            documents_count=int(data.get("documents_count") or 0),
            raw=data,
        )


@dataclass
class Document:
    id: int
    uuid: str
    display_name: str
    updated_at: datetime
    file_url: str = ""
    raw: dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> Document:
        return cls(
            id=int(data["id"]),
            uuid=str(data["uuid"]),
            display_name=str(data["display_name"]),
            updated_at=parse_timestamp(data["updated_at"]),
            file_url=data.get("file_url") or "",
            raw=data,
        )


@dataclass
class MaintenanceContract:
    id: int
    reference: str
    company_name: str

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> MaintenanceContract:
        return cls(
            id=int(data["id"]),
            reference=str(data.get("reference") or ""),
            company_name=str(data.get("company_name") or ""),
        )


@dataclass
class MaintenanceContractCategory:
    id: int
    display_name: str
    maintenance_contracts: list[MaintenanceContract]
    raw: dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> MaintenanceContractCategory:
        return cls(
            id=int(data["id"]),
            display_name=str(data["display_name"]),
            maintenance_contracts=[
                MaintenanceContract.from_json(mc) for mc in data.get("maintenance_contracts") or []
            ],
            raw=data,
        )


@dataclass
class MaintenanceContractDetails:
    id: int
    reference: str
    company_name: str
    documents: list[Document]
    raw: dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> MaintenanceContractDetails:
        return cls(
            id=int(data["id"]),
            reference=str(data.get("reference") or ""),
            company_name=str(data.get("company_name") or ""),
            documents=[
                Document.from_json(doc) for doc in data.get("maintenance_contract_documents") or []
            ],
            raw=data,
        )


@dataclass
class Report:
    id: int
    display_name: str
    created_at: datetime
    updated_at: datetime
    state: str
    url: str = ""
    raw: dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> Report:
        return cls(
            id=int(data["id"]),
            display_name=str(data["display_name"]),
            created_at=parse_timestamp(data["created_at"]),
            updated_at=parse_timestamp(data["updated_at"]),
            state=str(data["state"]),
            raw=data,
        )


@dataclass
class Attachment:
    id: int
    file_url: str
    source_file_name: str
    source_content_type: str
    source_updated_at: datetime

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> Attachment:
        return cls(
            id=int(data["id"]),
            file_url=str(data["file_url"]),
            source_file_name=str(data["source_file_name"]),
            source_content_type=str(data.get("source_content_type") or ""),
            source_updated_at=parse_timestamp(data["source_updated_at"]),
        )


@dataclass
class ForumTopic:
    id: int
    uuid: str
    display_name: str
    created_at: datetime
    updated_at: datetime
    attachments: list[Attachment]
    url: str = ""
    raw: dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> ForumTopic:
        return cls(
            id=int(data["id"]),
            uuid=str(data.get("uuid") or ""),
            display_name=str(data["display_name"]),
            created_at=parse_timestamp(data["created_at"]),
            updated_at=parse_timestamp(data["updated_at"]),
            attachments=[Attachment.from_json(a) for a in data.get("attachments") or []],
            raw=data,
        )


@dataclass
class Post:
    id: int
    attachments: list[Attachment]
    raw: dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> Post:
        return cls(
            id=int(data["id"]),
            attachments=[Attachment.from_json(a) for a in data.get("attachments") or []],
            raw=data,
        )


@dataclass
class FiscalYear:
    id: int
    display_name: str
    raw: dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> FiscalYear:
        return cls(id=int(data["id"]), display_name=str(data["display_name"]), raw=data)


@dataclass
class Budget:
    id: int
    display_name: str
    raw: dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> Budget:
        return cls(id=int(data["id"]), display_name=str(data["display_name"]), raw=data)


@dataclass
class AccountPlaceEntry:
    id: int
    uuid: str
    display_name: str
    amount: int
    operation_date: datetime
    updated_at: datetime
    raw: dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> AccountPlaceEntry:
        return cls(
            id=int(data["id"]),
            uuid=str(data["uuid"]),
            display_name=str(data["display_name"]),
            amount=int(data.get("amount") or 0),
            operation_date=parse_timestamp(data["operation_date"]),
            updated_at=parse_timestamp(data["updated_at"]),
            raw=data,
        )


class EseisClient:
    """
    Handles API calls to the Eseis REST API.

    Each call asks the TokenAuthority for a valid token first, so the token is
    refreshed ahead of expiry instead of failing mid-traversal.
    """

    def __init__(
        self,
        config: EseisConfig,
        session: requests.Session,
        tokens: TokenAuthority,
    ) -> None:
        self.config = config
        self.session = session
        self.tokens = tokens

    def _request(
        self,
        url: str,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> requests.Response:
        self.tokens.ensure_valid()

        request_headers = self.tokens.authorization_headers()
        if headers:
            request_headers.update(headers)

        logger.debug("GET %s params=%s", url, redact_params(params))
        try:
            response = self.session.get(
                url, params=params, headers=request_headers, timeout=REQUEST_TIMEOUT
            )
        except requests.RequestException as e:
            raise TransportError(f"Failed to send request to {url}: {e}") from e

        if response.status_code == 401:
            raise AuthError(f"Authentication rejected (401) for {url}")
        if response.status_code != 200:
            raise TransportError(
                f"Request to {url} failed: HTTP {response.status_code}\n"
                f"Response: {response.text[:500]}"
            )
        return response

    def _get_json(
        self,
        path: str,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> Any:
        response = self._request(self.config.build_url(path), params, headers)
        try:
            return response.json()
        except ValueError as e:
            raise DecodeError(f"Invalid JSON response from {path}: {e}") from e

    # Contracts and document folders

    def get_contracts(self, sergic_offer: str = SERGIC_OFFER) -> list[Contract]:
        data = self._get_json("/v1/users/me/contracts", {"by_sergic_offer": sergic_offer})
        return _decode_list(Contract, data)

    def get_contract_folders(self, contract_id: int, page: int) -> list[Folder]:
        data = self._get_json(
            "/v2/contract_folders",
            {"by_contract": contract_id, "page": page, "sort": "display_name"},
        )
        return _decode_list(Folder, data)

    def get_contract_documents(self, contract_id: int, folder_id: int, page: int) -> list[Document]:
        data = self._get_json(
            f"/v1/contracts/{contract_id}/contract_documents",
            {"by_folder": folder_id, "page": page},
        )
        return _decode_list(Document, data)

    def get_coownership_folders(self, place_id: int, page: int) -> list[Folder]:
        data = self._get_json(
            f"/v2/places/{place_id}/coownership_folders",
            {"page": page, "sort": "display_name"},
        )
        return _decode_list(Folder, data)

    def get_coownership_documents(self, place_id: int, folder_id: int, page: int) -> list[Document]:
        data = self._get_json(
            f"/v1/places/{place_id}/coownership_documents",
            {"by_folder": folder_id, "page": page},
        )
        return _decode_list(Document, data)

    # Maintenance contracts

    def get_maintenance_contract_categories(self, place_id: int) -> list[MaintenanceContractCategory]:
        data = self._get_json(f"/v1/places/{place_id}/maintenance_contract_categories")
        return _decode_list(MaintenanceContractCategory, data)

    def get_maintenance_contract_details(self, maintenance_contract_id: int) -> MaintenanceContractDetails:
        data = self._get_json(f"/v1/maintenance_contracts/{maintenance_contract_id}")
        return _decode(MaintenanceContractDetails, data)

    # Reports and forum

    def get_reports(self, place_id: int, page: int) -> list[Report]:
        data = self._get_json(
            f"/v1/places/{place_id}/reports",
            {"page": page, "per_page": 10, "sort": "created_at"},
        )
        reports = _decode_list(Report, data)
        for report in reports:
            report.url = self.config.build_web_url(f"/mes-echanges/signalements/{report.id}")
        return reports

    def get_forum_topics(self, place_id: int, page: int) -> list[ForumTopic]:
        data = self._get_json(
            f"/v1/places/{place_id}/forum/topics",
            {"page": page, "per_page": 20, "sort": "-updated_at"},
        )
        topics = _decode_list(ForumTopic, data)
        for topic in topics:
            topic.url = self.config.build_web_url(f"/mes-echanges/forum/{topic.id}")
        return topics

    def get_topic_posts(self, place_id: int, topic_id: int, page: int) -> list[Post]:
        data = self._get_json(
            f"/v1/forum/topics/{topic_id}/posts",
            {"page": page, "per_page": 15, "sort": "-updated_at"},
            headers={"x-current-place-id": str(place_id)},
        )
        return _decode_list(Post, data)

    def get_all_topic_posts(self, place_id: int, topic_id: int) -> list[Post]:
        return list(collect_pages(lambda page: self.get_topic_posts(place_id, topic_id, page)))

    # Budgets

    def get_fiscal_years(self, place_id: int) -> list[FiscalYear]:
        data = self._get_json(f"/v1/places/{place_id}/fiscal_years")
        return _decode_list(FiscalYear, data)

    def get_budgets(self, place_id: int, fiscal_year_id: int) -> list[Budget]:
        data = self._get_json(f"/v1/places/{place_id}/budgets", {"fiscal_year_id": fiscal_year_id})
        return _decode_list(Budget, data)

    def get_account_place_entries(self, budget_id: int) -> list[AccountPlaceEntry]:
        data = self._get_json(f"/v1/budgets/{budget_id}/account_place_entries")
        return _decode_list(AccountPlaceEntry, data)

    # Binary payloads

    def get_document(self, uuid: str) -> bytes:
        """Download the raw bytes of a document by UUID."""
        self.tokens.ensure_valid()
        response = self._request(
            self.config.build_url("/v1/sergic_documents"),
            {"access_token": self.tokens.access_token, "uuid": uuid},
        )
        return response.content

    def get_attachment(self, url: str) -> bytes:
        """Download the raw bytes of a forum attachment from its absolute URL."""
        return self._request(url).content
