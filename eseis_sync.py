#!/usr/bin/env python3
# /// script
# dependencies = [
#   "requests",
#   "playwright",
#   "playwright-stealth",
#   "python-dotenv",
# ]
# ///
"""
Eseis Sync Script

Mirrors every document of an Eseis co-ownership account (contracts,
co-ownership folders, maintenance contracts, reports, forum topics, budgets)
into a local directory tree. Later runs only download what changed remotely
since the local copy was written.

Usage:
    uv run eseis_sync.py                       # Full sync into $ESEIS_SCRAPPER_OUT_DIR
    uv run eseis_sync.py --out-dir ./eseis     # Override the output directory
    uv run eseis_sync.py --only reports forum  # Restrict to some resource kinds
    uv run eseis_sync.py --no-snapshots        # Skip browser-rendered PDFs
    uv run eseis_sync.py --keep-going          # Log and skip failing items
"""

from __future__ import annotations

import argparse
import enum
import json
import logging
import sys
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from eseis_auth import (
    TokenAuthority,
    create_session,
    get_credentials_from_prompt,
    load_config,
)
from eseis_client import (
    Attachment,
    Contract,
    Document,
    EseisClient,
    Folder,
    collect_pages,
)
from eseis_errors import AuthError, ConfigError, EseisError, FilesystemError
from eseis_snapshot import (
    FORUM_PAGE,
    REPORT_PAGE,
    PlaywrightDriver,
    SnapshotPipeline,
    SnapshotTarget,
)

logger = logging.getLogger(__name__)

PDF_EXTENSION = ".pdf"
JPG_EXTENSION = ".jpg"

CONTENT_TYPE_EXTENSIONS = {
    "application/pdf": PDF_EXTENSION,
    "image/jpeg": JPG_EXTENSION,
}

REPORT_STATES = ("opened", "acknowledged", "resolved")


class ResourceKind(enum.Enum):
    """The resource trees synced for each contract, named after their output directory."""

    INDIVIDUAL = "individual"
    COOWNERSHIP = "coownership"
    MAINTENANCE = "maintenance"
    REPORTS = "reports"
    FORUM = "forum"
    BUDGETS = "budgets"


class ExportAction(enum.Enum):
    CREATED = "created"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class ExportableItem:
    """The minimal identity needed to decide whether a local copy is stale."""

    remote_id: str
    display_name: str
    remote_updated_at: datetime


def sanitize_path(name: str) -> str:
    """Make a display name usable as a single path component."""
    return name.replace("/", "_").strip(" ")


def ensure_dir(path: Path) -> Path:
    try:
        path.mkdir(mode=0o770, parents=True, exist_ok=True)
    except OSError as e:
        raise FilesystemError(f"Failed to create directory {path}: {e}") from e
    return path


def write_info_file(content: Any, path: Path) -> None:
    """Write a pretty-printed JSON metadata file next to the exported files."""
    try:
        path.write_text(
            json.dumps(content, indent=2, ensure_ascii=False, default=str),
            encoding="utf-8",
        )
    except OSError as e:
        raise FilesystemError(f"Failed to write info file {path}: {e}") from e


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def local_mtime(path: Path) -> datetime | None:
    """Modification time of path, or None when it does not exist."""
    try:
        stat = path.stat()
    except FileNotFoundError:
        return None
    except OSError as e:
        raise FilesystemError(f"Failed to stat file at path {path}: {e}") from e
    return datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc)


def export_item(
    item: ExportableItem,
    fetch_bytes: Callable[[], bytes],
    destination: Path,
) -> ExportAction:
    """
    Download item to destination unless the local copy is newer than the remote one.

    An existing file is kept when the remote update time is strictly before
    the file's modification time; otherwise the bytes are fetched and the file
    (re)written, which moves its modification time to now.
    """
    modified = local_mtime(destination)
    if modified is not None and _as_utc(item.remote_updated_at) < modified:
        logger.info("%s:%s already downloaded", item.remote_id, item.display_name)
        return ExportAction.SKIPPED

    data = fetch_bytes()
    try:
        destination.write_bytes(data)
    except OSError as e:
        raise FilesystemError(f"Failed to write output file at path {destination}: {e}") from e
    return ExportAction.CREATED


def attachment_extension(content_type: str) -> str:
    return CONTENT_TYPE_EXTENSIONS.get(content_type, "")


def dated_name(created_at: datetime, resource_id: int, display_name: str) -> str:
    return f"{created_at.year}_{created_at.month}_{created_at.day}__{resource_id}__{sanitize_path(display_name)}"


def rfc3339(value: datetime) -> str:
    text = _as_utc(value).replace(microsecond=0).isoformat()
    if text.endswith("+00:00"):
        text = text[: -len("+00:00")] + "Z"
    return text


@dataclass
class ErrorPolicy:
    """
    Decides whether a failure ends the run or only the current item.

    Authentication and configuration failures always end the run. Anything
    else ends it too unless keep_going is set.
    """

    keep_going: bool = False
    always_fatal: tuple[type[EseisError], ...] = (AuthError, ConfigError)

    def is_fatal(self, error: EseisError) -> bool:
        return not self.keep_going or isinstance(error, self.always_fatal)


@dataclass
class SyncStats:
    created: int = 0
    skipped: int = 0
    failed: int = 0
    metadata: int = 0
    failures: list[str] = field(default_factory=list)

    def record(self, action: ExportAction) -> None:
        if action is ExportAction.CREATED:
            self.created += 1
        else:
            self.skipped += 1


@dataclass(frozen=True)
class FolderTree:
    """A paginated folder collection whose folders hold paginated documents."""

    kind: ResourceKind
    list_folders: Callable[[int], Sequence[Folder]]
    list_documents: Callable[[Folder, int], Sequence[Document]]


class EseisSyncer:
    """
    Walks every contract's resource trees and exports what changed.

    Binary files go through export_item; reports and forum topics are
    rendered by the snapshot pipeline when one is given.
    """

    def __init__(
        self,
        client: EseisClient,
        out_dir: Path,
        snapshots: SnapshotPipeline | None = None,
        policy: ErrorPolicy | None = None,
        kinds: Sequence[ResourceKind] | None = None,
    ) -> None:
        self.client = client
        self.out_dir = Path(out_dir)
        self.snapshots = snapshots
        self.policy = policy or ErrorPolicy()
        self.kinds = list(kinds) if kinds else list(ResourceKind)
        self.stats = SyncStats()
        self._exporters: dict[ResourceKind, Callable[[Contract, Path], None]] = {
            ResourceKind.INDIVIDUAL: self.export_individual_documents,
            ResourceKind.COOWNERSHIP: self.export_coownership_documents,
            ResourceKind.MAINTENANCE: self.export_maintenance_contracts,
            ResourceKind.REPORTS: self.export_reports,
            ResourceKind.FORUM: self.export_forum_topics,
            ResourceKind.BUDGETS: self.export_budgets,
        }

    @contextmanager
    def _item(self, description: str) -> Iterator[None]:
        try:
            yield
        except EseisError as e:
            if self.policy.is_fatal(e):
                logger.debug("Fatal failure on %s", description)
                raise
            self.stats.failed += 1
            self.stats.failures.append(f"{description}: {e}")
            logger.warning("Skipping %s: %s", description, e)

    def sync(self) -> SyncStats:
        ensure_dir(self.out_dir)

        contracts = self.client.get_contracts()
        logger.info("Found %d contracts", len(contracts))

        for contract in contracts:
            contract_dir = self.out_dir / sanitize_path(contract.display_name)
            logger.info("Processing contract %d - %s", contract.id, contract.display_name)
            for kind in self.kinds:
                with self._item(f"{kind.value} of contract {contract.id}"):
                    self._exporters[kind](contract, contract_dir)

        return self.stats

    # Leaf exports

    def _write_info(self, content: Any, path: Path) -> None:
        write_info_file(content, path)
        self.stats.metadata += 1

    def _export(self, item: ExportableItem, fetch_bytes: Callable[[], bytes], destination: Path) -> None:
        with self._item(f"{item.remote_id}:{item.display_name}"):
            self.stats.record(export_item(item, fetch_bytes, destination))

    def export_document(self, uuid: str, name: str, updated_at: datetime, folder: Path) -> None:
        logger.info("Exporting document %s:%s to folder %s", uuid, name, folder)
        self._export(
            ExportableItem(uuid, name, updated_at),
            lambda: self.client.get_document(uuid),
            folder / sanitize_path(name + PDF_EXTENSION),
        )

    def export_attachment(self, attachment: Attachment, folder: Path) -> None:
        name = attachment.source_file_name
        logger.info("Exporting attachment %s:%s to folder %s", attachment.file_url, name, folder)
        extension = attachment_extension(attachment.source_content_type)
        self._export(
            ExportableItem(attachment.file_url, name, attachment.source_updated_at),
            lambda: self.client.get_attachment(attachment.file_url),
            folder / sanitize_path(name + extension),
        )

    def export_snapshot(self, item: ExportableItem, url: str, target: SnapshotTarget, destination: Path) -> None:
        if self.snapshots is None:
            logger.debug("Snapshots disabled, not rendering %s", url)
            return
        snapshots = self.snapshots
        logger.info("Snapshotting %s:%s to %s", item.remote_id, item.display_name, destination)
        self._export(item, lambda: snapshots.snapshot(url, target), destination)

    # Resource trees

    def _folder_tree(self, kind: ResourceKind, contract: Contract) -> FolderTree:
        if kind is ResourceKind.INDIVIDUAL:
            return FolderTree(
                kind,
                lambda page: self.client.get_contract_folders(contract.id, page),
                lambda folder, page: self.client.get_contract_documents(contract.id, folder.id, page),
            )
        if kind is ResourceKind.COOWNERSHIP:
            return FolderTree(
                kind,
                lambda page: self.client.get_coownership_folders(contract.place_id, page),
                lambda folder, page: self.client.get_coownership_documents(contract.place_id, folder.id, page),
            )
        raise ValueError(f"{kind.value} is not a folder tree")

    def export_folder_tree(self, tree: FolderTree, out_dir: Path) -> None:
        for folder in collect_pages(tree.list_folders):
            logger.info("Folder %d:%s (%s)", folder.id, folder.display_name, tree.kind.value)
            folder_path = ensure_dir(out_dir / tree.kind.value / sanitize_path(folder.display_name))
            for document in collect_pages(lambda page: tree.list_documents(folder, page)):
                self.export_document(document.uuid, document.display_name, document.updated_at, folder_path)

    def export_individual_documents(self, contract: Contract, out_dir: Path) -> None:
        self.export_folder_tree(self._folder_tree(ResourceKind.INDIVIDUAL, contract), out_dir)

    def export_coownership_documents(self, contract: Contract, out_dir: Path) -> None:
        self.export_folder_tree(self._folder_tree(ResourceKind.COOWNERSHIP, contract), out_dir)

    def export_maintenance_contracts(self, contract: Contract, out_dir: Path) -> None:
        categories = self.client.get_maintenance_contract_categories(contract.place_id)
        for category in categories:
            category_path = out_dir / ResourceKind.MAINTENANCE.value / sanitize_path(category.display_name)
            for maintenance_contract in category.maintenance_contracts:
                logger.info(
                    "Maintenance contract %d:%s %s",
                    maintenance_contract.id,
                    maintenance_contract.company_name,
                    maintenance_contract.reference,
                )
                contract_path = ensure_dir(
                    category_path
                    / sanitize_path(f"{maintenance_contract.company_name}_{maintenance_contract.reference}")
                )
                details = self.client.get_maintenance_contract_details(maintenance_contract.id)
                for document in details.documents:
                    self.export_document(document.uuid, document.display_name, document.updated_at, contract_path)
                self._write_info(details.raw, contract_path / "info.json")

    def export_reports(self, contract: Contract, out_dir: Path) -> None:
        reports_dir = out_dir / ResourceKind.REPORTS.value
        for state in REPORT_STATES:
            ensure_dir(reports_dir / state)

        if self.snapshots is None:
            logger.info("Snapshots disabled, skipping reports of contract %d", contract.id)
            return

        for report in collect_pages(lambda page: self.client.get_reports(contract.place_id, page)):
            logger.info("Report %d:%s (%s)", report.id, report.display_name, report.state)
            state_dir = ensure_dir(reports_dir / sanitize_path(report.state))
            self.export_snapshot(
                ExportableItem(str(report.id), report.display_name, report.updated_at),
                report.url,
                REPORT_PAGE,
                state_dir / (dated_name(report.created_at, report.id, report.display_name) + PDF_EXTENSION),
            )

    def export_forum_topics(self, contract: Contract, out_dir: Path) -> None:
        forum_dir = ensure_dir(out_dir / ResourceKind.FORUM.value)

        for topic in collect_pages(lambda page: self.client.get_forum_topics(contract.place_id, page)):
            logger.info("Forum topic %d:%s", topic.id, topic.display_name)
            topic_name = dated_name(topic.created_at, topic.id, topic.display_name)
            topic_dir = ensure_dir(forum_dir / topic_name)

            self._write_info(topic.raw, topic_dir / "topic.json")
            for attachment in topic.attachments:
                self.export_attachment(attachment, topic_dir)

            self.export_snapshot(
                ExportableItem(str(topic.id), topic.display_name, topic.updated_at),
                topic.url,
                FORUM_PAGE,
                topic_dir / (topic_name + PDF_EXTENSION),
            )

            posts = self.client.get_all_topic_posts(contract.place_id, topic.id)
            self._write_info([post.raw for post in posts], topic_dir / "posts.json")
            for post in posts:
                for attachment in post.attachments:
                    self.export_attachment(attachment, topic_dir)

    def export_budgets(self, contract: Contract, out_dir: Path) -> None:
        budgets_dir = ensure_dir(out_dir / ResourceKind.BUDGETS.value)

        for fiscal_year in self.client.get_fiscal_years(contract.place_id):
            logger.info("Fiscal year %d:%s", fiscal_year.id, fiscal_year.display_name)
            budgets = self.client.get_budgets(contract.place_id, fiscal_year.id)
            fiscal_year_dir = ensure_dir(budgets_dir / sanitize_path(fiscal_year.display_name))
            self._write_info(fiscal_year.raw, fiscal_year_dir / "info.json")

            for budget in budgets:
                logger.info("Budget %d:%s", budget.id, budget.display_name)
                budget_dir = ensure_dir(fiscal_year_dir / sanitize_path(budget.display_name))
                self._write_info(budget.raw, budget_dir / "info.json")

                for entry in self.client.get_account_place_entries(budget.id):
                    entry_name = (
                        f"{rfc3339(entry.operation_date)}_{entry.amount}_{sanitize_path(entry.display_name)}"
                    )
                    self._write_info(entry.raw, budget_dir / f"{entry_name}.json")
                    self.export_document(entry.uuid, entry_name, entry.updated_at, budget_dir)


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Eseis Sync Script",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--out-dir",
        help="Output directory (default: $ESEIS_SCRAPPER_OUT_DIR)",
    )
    parser.add_argument(
        "--only",
        nargs="+",
        choices=[kind.value for kind in ResourceKind],
        metavar="KIND",
        help="Only sync these resource kinds: " + ", ".join(kind.value for kind in ResourceKind),
    )
    parser.add_argument(
        "--keep-going",
        action="store_true",
        help="Log and skip items that fail instead of stopping the run",
    )
    parser.add_argument(
        "--no-snapshots",
        action="store_true",
        help="Do not start a browser; skip report and forum page PDFs",
    )
    parser.add_argument(
        "--prompt",
        action="store_true",
        help="Ask for username/password when they are not set in the environment",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging",
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    print("Eseis Sync")
    print("=" * 50)
    print()

    try:
        config = load_config(require_out_dir=args.out_dir is None, require_credentials=not args.prompt)
        if args.prompt and not (config.username and config.password):
            config = get_credentials_from_prompt(config)
    except ConfigError as e:
        logger.error("Invalid configuration: %s", e)
        return 1

    out_dir = Path(args.out_dir or config.out_dir)
    kinds = [ResourceKind(value) for value in args.only] if args.only else None

    session = create_session()
    tokens = TokenAuthority(config, session)
    snapshots: SnapshotPipeline | None = None

    try:
        tokens.ensure_valid()
        if not args.no_snapshots:
            snapshots = SnapshotPipeline(
                PlaywrightDriver(),
                config.base_web_url,
                config.username,
                config.password,
            )

        syncer = EseisSyncer(
            EseisClient(config, session, tokens),
            out_dir,
            snapshots=snapshots,
            policy=ErrorPolicy(keep_going=args.keep_going),
            kinds=kinds,
        )
        stats = syncer.sync()

    except EseisError as e:
        logger.error("Sync failed: %s", e)
        return 1
    except KeyboardInterrupt:
        print("\n\nInterrupted by user. Files written so far are kept.")
        return 1
    finally:
        # Clean up browser resources
        if snapshots is not None:
            snapshots.close()
        session.close()

    print()
    print("-" * 50)
    print("Sync Summary")
    print("-" * 50)
    print(f"  Output directory: {out_dir}")
    print(f"  Downloaded: {stats.created}")
    print(f"  Already up to date: {stats.skipped}")
    print(f"  Metadata files written: {stats.metadata}")
    if stats.failed:
        print(f"  Failed: {stats.failed}")
        for failure in stats.failures:
            print(f"    - {failure}")
    print()
    print("Done scraping Eseis documents")
    return 0


if __name__ == "__main__":
    sys.exit(main())
