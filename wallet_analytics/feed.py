"""Transaction Feed and Wallet Registry HTTP helpers."""

from __future__ import annotations

import logging
import os
from collections.abc import Iterator
from datetime import datetime
from typing import Any, Dict

import pandas as pd
import requests

from .activity import TransactionEvent
from .config import TX_FEED_API_KEY_ENV, TX_FEED_BASE
from .http_utils import RequestOptions, build_session, cached_json_request
from .period_utils import as_utc

LOGGER = logging.getLogger(__name__)

WALLET_ENDPOINT = f"{TX_FEED_BASE}/wallets"
PAGE_LIMIT = 200


def _feed_session() -> requests.Session:
    headers = {"User-Agent": "wallet-analytics/1.0"}
    api_key = _get_api_key()
    if api_key:
        headers["X-API-Key"] = api_key
    return build_session(headers)


def _get_api_key() -> str | None:
    return os.getenv(TX_FEED_API_KEY_ENV)


def fetch_transactions_page(
    wallet_id: str,
    *,
    limit: int = PAGE_LIMIT,
    offset: int = 0,
    since: datetime | None = None,
    until: datetime | None = None,
    force_refresh: bool = False,
    ttl_seconds: int = 900,
) -> Dict[str, Any]:
    """Fetch a page of classified transactions for one wallet."""
    params: Dict[str, Any] = {"limit": min(limit, PAGE_LIMIT), "offset": offset}
    if since is not None:
        params["since"] = as_utc(since).isoformat()
    if until is not None:
        params["until"] = as_utc(until).isoformat()
    return cached_json_request(
        RequestOptions(
            prefix="feed_transactions",
            session=_feed_session(),
            method="GET",
            url=f"{WALLET_ENDPOINT}/{wallet_id}/transactions",
            params=params,
            ttl_seconds=ttl_seconds,
            force_refresh=force_refresh,
        )
    )


def iterate_wallet_events(
    wallet_id: str,
    *,
    since: datetime | None = None,
    until: datetime | None = None,
    force_refresh: bool = False,
) -> Iterator[TransactionEvent]:
    offset = 0
    while True:
        payload = fetch_transactions_page(
            wallet_id,
            offset=offset,
            since=since,
            until=until,
            force_refresh=force_refresh,
        )
        results = payload.get("results", [])
        for item in results:
            item.setdefault("wallet_id", wallet_id)
            yield TransactionEvent.from_mapping(item)
        total = payload.get("total")
        offset += len(results)
        if not results or (total is not None and offset >= int(total)):
            break


def fetch_wallet_events(
    wallet_id: str,
    *,
    since: datetime | None = None,
    until: datetime | None = None,
    force_refresh: bool = False,
) -> list[TransactionEvent]:
    events = list(
        iterate_wallet_events(wallet_id, since=since, until=until, force_refresh=force_refresh)
    )
    LOGGER.debug("Fetched %d events for %s", len(events), wallet_id)
    return events


def fetch_wallet_record(
    wallet_id: str, *, force_refresh: bool = False, ttl_seconds: int = 86400
) -> Dict[str, Any]:
    """Return ``{wallet_id, created_at, wallet_type}`` from the registry.

    ``created_at`` is None when the registry does not know it.
    """
    payload = cached_json_request(
        RequestOptions(
            prefix="registry_wallet",
            session=_feed_session(),
            method="GET",
            url=f"{WALLET_ENDPOINT}/{wallet_id}",
            ttl_seconds=ttl_seconds,
            force_refresh=force_refresh,
        )
    )
    created_raw = payload.get("created_at") or payload.get("first_seen")
    return {
        "wallet_id": str(payload.get("wallet_id", wallet_id)),
        "created_at": as_utc(created_raw) if created_raw else None,
        "wallet_type": payload.get("wallet_type"),
    }


def fetch_wallet_records(wallet_ids: list[str], *, force_refresh: bool = False) -> pd.DataFrame:
    rows = [fetch_wallet_record(wallet_id, force_refresh=force_refresh) for wallet_id in wallet_ids]
    frame = pd.DataFrame(rows, columns=["wallet_id", "created_at", "wallet_type"])
    frame["created_at"] = pd.to_datetime(frame["created_at"], utc=True)
    return frame
