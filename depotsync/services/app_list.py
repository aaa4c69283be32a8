from __future__ import annotations

from typing import Any, Dict, Optional
import logging

import requests

from ..core.config import (
    STEAM_REQUEST_TIMEOUT_SECONDS,
    STEAM_WEB_API_KEY,
    STEAM_WEB_API_URL,
)

logger = logging.getLogger(__name__)

_USER_AGENT = "depotsync/1.0"


def _steam_applist_url() -> str:
    return f"{STEAM_WEB_API_URL.rstrip('/')}/ISteamApps/GetAppList/v2/"


def _steam_store_applist_url() -> str:
    return f"{STEAM_WEB_API_URL.rstrip('/')}/IStoreService/GetAppList/v1/"


def _collect(apps: Any, into: Dict[int, str]) -> int:
    added = 0
    if not isinstance(apps, list):
        return added
    for item in apps:
        if not isinstance(item, dict):
            continue
        try:
            app_id = int(item.get("appid") or 0)
        except (TypeError, ValueError):
            continue
        if app_id <= 0 or app_id in into:
            continue
        into[app_id] = str(item.get("name") or "").strip()
        added += 1
    return added


def fetch_steam_app_list(session: Optional[requests.Session] = None) -> Dict[int, str]:
    """
    Every app id Steam publishes, mapped to its store name (may be empty).
    Returns an empty dict when neither endpoint answers.
    """
    http = session or requests
    apps: Dict[int, str] = {}

    # Preferred source: IStoreService endpoint with pagination and API key.
    if STEAM_WEB_API_KEY:
        last_appid = 0
        safety_pages = 500
        for _ in range(safety_pages):
            try:
                response = http.get(
                    _steam_store_applist_url(),
                    params={
                        "key": STEAM_WEB_API_KEY,
                        "max_results": 50000,
                        "last_appid": last_appid,
                        "include_games": True,
                        "include_dlc": True,
                        "include_software": True,
                        "include_videos": False,
                        "include_hardware": False,
                    },
                    timeout=max(STEAM_REQUEST_TIMEOUT_SECONDS, 20),
                    headers={"User-Agent": _USER_AGENT},
                )
                if response.status_code != 200:
                    logger.warning("IStoreService/GetAppList returned HTTP %s", response.status_code)
                    break
                payload = response.json()
            except (requests.RequestException, ValueError) as exc:
                logger.warning("IStoreService/GetAppList failed: %s", exc)
                break

            response_obj = (payload or {}).get("response", {}) or {}
            page_added = _collect(response_obj.get("apps", []), apps)
            have_more = bool(response_obj.get("have_more_results"))
            next_last_appid = int(response_obj.get("last_appid") or 0)
            if not have_more or next_last_appid <= 0 or page_added <= 0:
                break
            if next_last_appid <= last_appid:
                break
            last_appid = next_last_appid

        if apps:
            logger.info("Enumerated %s apps via IStoreService", len(apps))
            return apps

    # Legacy fallback: older ISteamApps endpoint.
    try:
        response = http.get(
            _steam_applist_url(),
            timeout=STEAM_REQUEST_TIMEOUT_SECONDS,
            headers={"User-Agent": _USER_AGENT},
        )
        if response.status_code != 200:
            logger.warning("ISteamApps/GetAppList returned HTTP %s", response.status_code)
            return {}
        payload = response.json()
    except (requests.RequestException, ValueError) as exc:
        logger.warning("ISteamApps/GetAppList failed: %s", exc)
        return {}

    _collect(((payload or {}).get("applist", {}) or {}).get("apps", []), apps)
    logger.info("Enumerated %s apps via ISteamApps", len(apps))
    return apps
