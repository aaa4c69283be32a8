from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Dict, Iterator, List, Optional, Protocol
import logging
import math
import threading

from ..core.config import PICS_APP_BATCH_SIZE
from ..core.retry import RetryPolicy, call_with_retry
from .app_list import fetch_steam_app_list
from .errors import FullScanRequiredError, NetworkError
from .mapping_store import DepotMappingRecord
from .pics_client import PicsCatalogClient
from .progress import AuthMode, ScanMode, ScanStatus

logger = logging.getLogger(__name__)

_PROGRESS_LOG_EVERY = 25


@dataclass(frozen=True)
class MappingBatch:
    mappings: List[DepotMappingRecord] = field(default_factory=list)
    batch_index: int = 0
    total_batches_known: int = 0


class JobContext(Protocol):
    cancel_event: threading.Event

    def check_cancelled(self) -> None:
        ...

    def set_status(self, status: ScanStatus, message: str = "") -> None:
        ...

    def set_connection(self, connected: bool, logged_on: bool) -> None:
        ...

    def report(
        self,
        *,
        processed_batches: Optional[int] = None,
        total_batches: Optional[int] = None,
        processed_apps: Optional[int] = None,
        total_apps: Optional[int] = None,
        current_change_number: Optional[int] = None,
        message: Optional[str] = None,
    ) -> None:
        ...


class AcquisitionStrategy:
    """
    Producer of mapping batches. ``connect`` runs first, then ``batches`` is
    iterated by the controller, which applies each batch before resuming the
    generator. ``current_change_number`` is final once iteration ends.
    """

    mode: ScanMode = ScanMode.FULL

    def __init__(self) -> None:
        self.current_change_number = 0

    def connect(self, ctx: JobContext) -> None:
        raise NotImplementedError

    def batches(self, ctx: JobContext) -> Iterator[MappingBatch]:
        raise NotImplementedError

    def close(self) -> None:
        return None


def chunk_batches(
    ctx: JobContext,
    items: List,
    batch_size: int,
    produce: Callable[[List], MappingBatch],
    label: str,
) -> Iterator[MappingBatch]:
    total = int(math.ceil(len(items) / float(batch_size))) if items else 0
    ctx.report(total_batches=total)
    processed_items = 0
    for index in range(total):
        ctx.check_cancelled()
        chunk = items[index * batch_size : (index + 1) * batch_size]
        batch = produce(chunk)
        ctx.check_cancelled()
        batch = MappingBatch(
            mappings=batch.mappings,
            batch_index=index + 1,
            total_batches_known=total,
        )
        yield batch
        processed_items += len(chunk)
        ctx.report(processed_batches=index + 1, processed_apps=processed_items)
        if (index + 1) % _PROGRESS_LOG_EVERY == 0 or index + 1 == total:
            logger.info("%s: batch %s/%s done", label, index + 1, total)
        else:
            logger.debug("%s: batch %s/%s done", label, index + 1, total)


class _PicsCrawl(AcquisitionStrategy):
    def __init__(
        self,
        auth_mode: AuthMode = AuthMode.ANONYMOUS,
        *,
        client_factory: Optional[Callable[[threading.Event], PicsCatalogClient]] = None,
        batch_size: int = PICS_APP_BATCH_SIZE,
    ):
        super().__init__()
        self.auth_mode = AuthMode(auth_mode)
        self.batch_size = max(1, int(batch_size))
        self._client_factory = client_factory or (lambda event: PicsCatalogClient(cancel_event=event))
        self.client: Optional[PicsCatalogClient] = None

    def connect(self, ctx: JobContext) -> None:
        ctx.set_status(ScanStatus.CONNECTING, "Connecting to Steam")
        self.client = self._client_factory(ctx.cancel_event)
        self.client.connect()
        ctx.check_cancelled()
        ctx.set_connection(True, False)

        if self.auth_mode == AuthMode.ACCOUNT:
            ctx.set_status(ScanStatus.AUTHENTICATING, "Logging in to Steam")
        self.client.login(self.auth_mode.value)
        ctx.check_cancelled()
        ctx.set_connection(True, True)

    def _crawl_apps(
        self,
        ctx: JobContext,
        app_ids: List[int],
        names: Optional[Dict[int, str]] = None,
    ) -> Iterator[MappingBatch]:
        ctx.report(total_apps=len(app_ids))

        def produce(chunk: List[int]) -> MappingBatch:
            return MappingBatch(mappings=self.client.fetch_app_depots(chunk, known_names=names))

        yield from chunk_batches(ctx, app_ids, self.batch_size, produce, self.mode.value)

    def close(self) -> None:
        if self.client is not None:
            self.client.disconnect()


class IncrementalCrawl(_PicsCrawl):
    """Only the apps that changed since the stored change number."""

    mode = ScanMode.INCREMENTAL

    def __init__(self, last_change_number: int, auth_mode: AuthMode = AuthMode.ANONYMOUS, **kwargs):
        super().__init__(auth_mode, **kwargs)
        self.last_change_number = max(0, int(last_change_number or 0))

    def batches(self, ctx: JobContext) -> Iterator[MappingBatch]:
        ctx.set_status(ScanStatus.CRAWLING, f"Fetching changes since {self.last_change_number}")
        changes = self.client.get_changes_since(self.last_change_number)
        ctx.check_cancelled()
        if changes.force_full_update:
            raise FullScanRequiredError(
                f"Steam requires a full scan; change number {self.last_change_number} is too old"
            )
        self.current_change_number = changes.current_change_number
        ctx.report(current_change_number=changes.current_change_number)
        logger.info(
            "Incremental crawl: %s changed apps between %s and %s",
            len(changes.app_ids),
            self.last_change_number,
            changes.current_change_number,
        )
        yield from self._crawl_apps(ctx, changes.app_ids)


class FullCrawl(_PicsCrawl):
    """Every app in the Steam catalog, enumerated through the Web API."""

    mode = ScanMode.FULL

    def __init__(
        self,
        auth_mode: AuthMode = AuthMode.ANONYMOUS,
        *,
        app_list_fetcher: Callable[[], Dict[int, str]] = fetch_steam_app_list,
        retry_policy: Optional[RetryPolicy] = None,
        **kwargs,
    ):
        super().__init__(auth_mode, **kwargs)
        self._app_list_fetcher = app_list_fetcher
        self.retry_policy = retry_policy or RetryPolicy()

    def _list_apps(self) -> Dict[int, str]:
        apps = self._app_list_fetcher()
        if not apps:
            raise NetworkError("Steam app list is empty")
        return apps

    def batches(self, ctx: JobContext) -> Iterator[MappingBatch]:
        ctx.set_status(ScanStatus.CRAWLING, "Enumerating the Steam catalog")
        self.current_change_number = self.client.current_change_number()
        ctx.check_cancelled()
        ctx.report(current_change_number=self.current_change_number)

        apps = call_with_retry(
            self._list_apps,
            policy=self.retry_policy,
            retry_on=(NetworkError,),
            label="steam app list",
            cancel_event=ctx.cancel_event,
        )
        ctx.check_cancelled()
        names = {app_id: name for app_id, name in apps.items() if name}
        logger.info("Full crawl: %s apps at change number %s", len(apps), self.current_change_number)
        yield from self._crawl_apps(ctx, sorted(apps.keys()), names)
