from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional
import logging
import threading

from steam.client import SteamClient
from steam.enums import EResult

from ..core.config import (
    STEAM_ACCOUNT_NAME,
    STEAM_ACCOUNT_PASSWORD,
    STEAM_REQUEST_TIMEOUT_SECONDS,
)
from ..core.retry import RetryPolicy, call_with_retry
from .errors import AuthError, NetworkError
from .mapping_store import DepotMappingRecord

logger = logging.getLogger(__name__)

_RETRYABLE = (NetworkError, ConnectionError, TimeoutError)


@dataclass(frozen=True)
class ChangeSet:
    current_change_number: int
    app_ids: List[int] = field(default_factory=list)
    force_full_update: bool = False


def _as_int(value: Any) -> Optional[int]:
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return None
    return parsed if parsed > 0 else None


def _app_info(entry: Any) -> Dict[str, Any]:
    if not isinstance(entry, dict):
        return {}
    info = entry.get("appinfo", entry)
    return info if isinstance(info, dict) else {}


def extract_depot_mappings(
    apps: Dict[Any, Any],
    observed_at: Optional[datetime] = None,
    known_names: Optional[Dict[int, str]] = None,
) -> List[DepotMappingRecord]:
    """
    Turn a ``get_product_info`` apps payload into depot mappings.

    A depot shared from another app (``depotfromapp``) belongs to that app.
    Depots whose id equals their owner's id are skipped.
    """
    observed = observed_at or datetime.utcnow()
    names: Dict[int, str] = dict(known_names or {})
    for raw_id, entry in (apps or {}).items():
        app_id = _as_int(raw_id)
        name = (_app_info(entry).get("common") or {}).get("name")
        if app_id and name:
            names[app_id] = str(name).strip()

    latest: Dict[int, DepotMappingRecord] = {}
    for raw_id, entry in (apps or {}).items():
        app_id = _as_int(raw_id)
        if not app_id:
            continue
        depots = _app_info(entry).get("depots") or {}
        if not isinstance(depots, dict):
            continue
        for key, value in depots.items():
            if not str(key).isdigit() or not isinstance(value, dict):
                continue
            depot_id = int(key)
            owner = _as_int(value.get("depotfromapp")) or app_id
            if depot_id == owner:
                continue
            latest[depot_id] = DepotMappingRecord(
                depot_id=depot_id,
                app_id=owner,
                game_name=names.get(owner) or f"App {owner}",
                observed_at=observed,
                source="pics",
            )
    return list(latest.values())


class PicsCatalogClient:
    """Thin wrapper over ``steam.client.SteamClient`` for the PICS calls a scan needs."""

    def __init__(
        self,
        client_factory: Callable[[], Any] = SteamClient,
        *,
        retry_policy: Optional[RetryPolicy] = None,
        timeout: float = STEAM_REQUEST_TIMEOUT_SECONDS,
        account_name: str = STEAM_ACCOUNT_NAME,
        account_password: str = STEAM_ACCOUNT_PASSWORD,
        cancel_event: Optional[threading.Event] = None,
    ):
        self._client_factory = client_factory
        self._client = None
        self.retry_policy = retry_policy or RetryPolicy()
        self.timeout = timeout
        self.account_name = account_name
        self.account_password = account_password
        self.cancel_event = cancel_event

    @property
    def client(self):
        if self._client is None:
            self._client = self._client_factory()
        return self._client

    def _retry(self, action: Callable[[], Any], label: str):
        return call_with_retry(
            action,
            policy=self.retry_policy,
            retry_on=_RETRYABLE,
            label=label,
            cancel_event=self.cancel_event,
        )

    def connect(self) -> None:
        def _connect():
            if self.client.connected:
                return True
            if not self.client.connect():
                raise NetworkError("Could not connect to a Steam CM server")
            return True

        try:
            self._retry(_connect, "steam connect")
        except (ConnectionError, TimeoutError) as exc:
            raise NetworkError(f"Could not connect to Steam: {exc}") from exc
        logger.info("Connected to Steam")

    def login(self, auth_mode: str = "anonymous") -> None:
        if auth_mode == "account":
            if not self.account_name or not self.account_password:
                raise AuthError("Account login requested but STEAM_ACCOUNT_NAME/STEAM_ACCOUNT_PASSWORD are not set")
            result = self.client.login(self.account_name, self.account_password)
        else:
            result = self.client.anonymous_login()

        if result != EResult.OK:
            raise AuthError(f"Steam rejected the {auth_mode} login: {result!r}")
        logger.info("Logged on to Steam (%s)", auth_mode)

    def get_changes_since(self, change_number: int, app_changes: bool = True) -> ChangeSet:
        def _fetch():
            response = self.client.get_changes_since(
                int(max(0, change_number)),
                app_changes=app_changes,
                package_changes=False,
            )
            if response is None:
                raise NetworkError("Timed out waiting for PICS changes")
            return response

        try:
            response = self._retry(_fetch, "pics changes")
        except (ConnectionError, TimeoutError) as exc:
            raise NetworkError(f"PICS change request failed: {exc}") from exc

        app_ids = sorted({int(change.appid) for change in getattr(response, "app_changes", []) or []})
        force_full = bool(
            getattr(response, "force_full_update", False) or getattr(response, "force_full_app_update", False)
        )
        return ChangeSet(
            current_change_number=int(getattr(response, "current_change_number", 0) or 0),
            app_ids=app_ids,
            force_full_update=force_full,
        )

    def current_change_number(self) -> int:
        return self.get_changes_since(0, app_changes=False).current_change_number

    def fetch_app_depots(
        self,
        app_ids: List[int],
        known_names: Optional[Dict[int, str]] = None,
    ) -> List[DepotMappingRecord]:
        """Depot mappings from the product info of one chunk of apps."""
        if not app_ids:
            return []

        def _fetch():
            result = self.client.get_product_info(
                apps=[int(app_id) for app_id in app_ids],
                auto_access_tokens=True,
                timeout=self.timeout,
            )
            if result is None:
                raise NetworkError(f"Timed out fetching product info for {len(app_ids)} apps")
            return result

        try:
            result = self._retry(_fetch, "pics product info")
        except (ConnectionError, TimeoutError) as exc:
            raise NetworkError(f"PICS product info request failed: {exc}") from exc

        apps = result.get("apps") or {}
        return extract_depot_mappings(apps, known_names=known_names)

    def disconnect(self) -> None:
        if self._client is None:
            return
        try:
            if self._client.logged_on:
                self._client.logout()
            self._client.disconnect()
        except (ConnectionError, OSError) as exc:
            logger.debug("Steam disconnect failed: %s", exc)
