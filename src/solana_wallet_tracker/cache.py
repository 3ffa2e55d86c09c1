"""
Persistent sync cache.

Four per-asset stores (balances, transfers, metadata, price) plus a sync-state
record of when each was last written. Writes are merges keyed by account
address or transaction signature, so repeated and overlapping fetches can be
merged blindly. Freshness is computed on read from the last sync time and a
per-store TTL.
"""

import json
import logging
import os
import tempfile
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from .models import (
    AssetMetadata, AssetPrice, BalancePoint, BalanceResult, BalanceSnapshot,
    ClassifiedTransfer, PricePoint, WatchedAccount,
    BALANCE_HISTORY_LIMIT, PRICE_HISTORY_LIMIT,
)
from .utils import address_key, from_iso, normalize_address, short_address, to_iso, utcnow

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

BALANCES = "balances"
TRANSFERS = "transfers"
METADATA = "metadata"
PRICE = "price"
SYNC_STATE = "sync_state"
STORES = (BALANCES, TRANSFERS, METADATA, PRICE, SYNC_STATE)


@dataclass
class CacheTTL:
    """Freshness window per data type."""
    balances: timedelta = timedelta(minutes=2)
    transfers: timedelta = timedelta(seconds=30)
    metadata: timedelta = timedelta(hours=24)
    price: timedelta = timedelta(minutes=1)


def is_stale(last_sync: Optional[datetime], ttl: timedelta, now: datetime) -> bool:
    """True when there is no sync time or it is older than `ttl`."""
    if last_sync is None:
        return True
    return now - last_sync > ttl


# ----------------------------------------------------------------------
# Backends
# ----------------------------------------------------------------------

class MemoryBackend:
    """Dict-backed store, used by tests and for throwaway sessions."""

    def __init__(self):
        self._records: Dict[str, Dict[str, Any]] = {}

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        record = self._records.get(key)
        # Hand out copies so callers cannot mutate stored state in place
        return json.loads(json.dumps(record)) if record is not None else None

    def put(self, key: str, record: Dict[str, Any]) -> None:
        self._records[key] = json.loads(json.dumps(record))

    def delete(self, key: str) -> None:
        self._records.pop(key, None)

    def keys(self) -> List[str]:
        return list(self._records)


class JsonFileBackend:
    """One JSON file per record under a root directory."""

    def __init__(self, root: str):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        return self.root / f"{key}.json"

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        path = self._path(key)
        if not path.exists():
            return None
        try:
            with open(path, "r", encoding="utf-8") as f:
                return json.load(f)
        except (OSError, ValueError) as e:
            logger.error(f"Failed to read cache record {key}: {e}")
            return None

    def put(self, key: str, record: Dict[str, Any]) -> None:
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(record, f, indent=2, default=str)
            os.replace(tmp_name, path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

    def delete(self, key: str) -> None:
        try:
            self._path(key).unlink()
        except FileNotFoundError:
            pass

    def keys(self) -> List[str]:
        return [
            path.relative_to(self.root).with_suffix("").as_posix()
            for path in self.root.rglob("*.json")
        ]


# ----------------------------------------------------------------------
# Read views
# ----------------------------------------------------------------------

@dataclass
class BalanceView:
    snapshots: List[BalanceSnapshot]
    last_sync: Optional[datetime]
    is_stale: bool

    @property
    def has_data(self) -> bool:
        return bool(self.snapshots)

    def by_address(self) -> Dict[str, BalanceSnapshot]:
        return {address_key(s.address): s for s in self.snapshots}


@dataclass
class TransferView:
    transfers: List[ClassifiedTransfer]
    last_sync: Optional[datetime]
    is_stale: bool

    @property
    def has_data(self) -> bool:
        return bool(self.transfers)

    @property
    def newest_id(self) -> Optional[str]:
        return self.transfers[0].signature_id if self.transfers else None

    @property
    def oldest_id(self) -> Optional[str]:
        return self.transfers[-1].signature_id if self.transfers else None


@dataclass
class MetadataView:
    metadata: Optional[AssetMetadata]
    last_sync: Optional[datetime]
    is_stale: bool

    @property
    def has_data(self) -> bool:
        return self.metadata is not None


@dataclass
class PriceView:
    price: Optional[AssetPrice]
    last_sync: Optional[datetime]
    is_stale: bool

    @property
    def has_data(self) -> bool:
        return self.price is not None


@dataclass
class MergeResult:
    added_count: int
    total_count: int


@dataclass
class InstantLoadData:
    """Everything needed to render a dashboard before any network call."""
    has_data: bool
    balances: List[BalanceSnapshot]
    transfers: List[ClassifiedTransfer]
    asset_info: Optional[Dict[str, Any]]
    last_sync: Dict[str, Optional[datetime]]
    staleness: Dict[str, bool]


@dataclass
class SyncNeeds:
    needs_metadata: bool
    needs_price: bool
    needs_balances: bool
    needs_transfers: bool
    stale_accounts: List[WatchedAccount] = field(default_factory=list)
    fresh_accounts: List[WatchedAccount] = field(default_factory=list)
    newest_transfer_time: Optional[datetime] = None


@dataclass
class CacheStats:
    asset_count: int
    total_wallets: int
    total_transfers: int
    storage_bytes: int


def _sort_newest_first(transfers: Iterable[ClassifiedTransfer]) -> List[ClassifiedTransfer]:
    return sorted(
        transfers,
        key=lambda t: t.timestamp.timestamp() if t.timestamp else float("-inf"),
        reverse=True,
    )


class SyncCache:
    """Injectable cache service shared by the orchestrator and the presentation layer."""

    def __init__(self, backend=None, clock: Callable[[], datetime] = utcnow,
                 ttl: Optional[CacheTTL] = None):
        self.backend = backend if backend is not None else MemoryBackend()
        self.clock = clock
        self.ttl = ttl or CacheTTL()
        self._lock = threading.RLock()

    @classmethod
    def on_disk(cls, data_dir: str, **kwargs: Any) -> "SyncCache":
        return cls(JsonFileBackend(os.path.join(data_dir, "cache")), **kwargs)

    # ------------------------------------------------------------------
    # Record access
    # ------------------------------------------------------------------

    @staticmethod
    def _key(store: str, asset: str) -> str:
        return f"{store}/{normalize_address(asset)}"

    def _load(self, store: str, asset: str) -> Optional[Dict[str, Any]]:
        record = self.backend.get(self._key(store, asset))
        if record is None:
            return None

        version = record.get("schema_version")
        if version is None:
            # Records written before versioning share the v1 layout
            record["schema_version"] = SCHEMA_VERSION
            logger.info(f"Migrated unversioned {store} record for {short_address(asset)}")
        elif version > SCHEMA_VERSION:
            logger.warning(
                f"Ignoring {store} record for {short_address(asset)} "
                f"with newer schema version {version}")
            return None
        return record

    def _save(self, store: str, asset: str, record: Dict[str, Any]) -> None:
        record["schema_version"] = SCHEMA_VERSION
        self.backend.put(self._key(store, asset), record)

    @staticmethod
    def _last_sync(record: Optional[Dict[str, Any]]) -> Optional[datetime]:
        if not record or not record.get("last_sync"):
            return None
        return from_iso(record["last_sync"])

    def _touch_sync_state(self, asset: str, data_type: str, moment: datetime) -> None:
        state = self._load(SYNC_STATE, asset) or {"entries": {}}
        state["entries"][data_type] = to_iso(moment)
        self._save(SYNC_STATE, asset, state)

    def get_sync_state(self, asset: str) -> Dict[str, datetime]:
        with self._lock:
            state = self._load(SYNC_STATE, asset) or {"entries": {}}
        return {name: from_iso(value) for name, value in state["entries"].items()}

    # ------------------------------------------------------------------
    # Balances
    # ------------------------------------------------------------------

    def get_balances(self, asset: str) -> BalanceView:
        with self._lock:
            record = self._load(BALANCES, asset)
        last_sync = self._last_sync(record)
        snapshots = [BalanceSnapshot.from_dict(w) for w in (record or {}).get("wallets", [])]
        return BalanceView(
            snapshots=snapshots,
            last_sync=last_sync,
            is_stale=is_stale(last_sync, self.ttl.balances, self.clock()),
        )

    def merge_balances(self, asset: str, results: List[BalanceResult]) -> List[BalanceSnapshot]:
        """Merge fresh balances into the cache, keeping per-account history.

        An errored result never overwrites a previously good amount; it only
        records the error on the existing entry.
        """
        with self._lock:
            now = self.clock()
            record = self._load(BALANCES, asset) or {}
            existing: Dict[str, BalanceSnapshot] = {}
            for item in record.get("wallets", []):
                snapshot = BalanceSnapshot.from_dict(item)
                existing[address_key(snapshot.address)] = snapshot

            for result in results:
                key = address_key(result.address)
                prev = existing.get(key)

                if result.error:
                    if prev:
                        prev.error = result.error
                    else:
                        existing[key] = BalanceSnapshot(
                            address=result.address, raw_amount=0, decimals=result.decimals,
                            ui_amount=0.0, first_seen_at=now, last_updated_at=now,
                            error=result.error)
                    continue

                history = list(prev.history[-(BALANCE_HISTORY_LIMIT - 1):]) if prev else []
                history.append(BalancePoint(amount=result.ui_amount, timestamp=now))
                existing[key] = BalanceSnapshot(
                    address=result.address,
                    raw_amount=result.raw_amount,
                    decimals=result.decimals,
                    ui_amount=result.ui_amount,
                    previous_ui_amount=prev.ui_amount if prev else None,
                    history=history,
                    first_seen_at=prev.first_seen_at if prev else now,
                    last_updated_at=now,
                )

            snapshots = list(existing.values())
            self._save(BALANCES, asset, {
                "wallets": [s.to_dict() for s in snapshots],
                "last_sync": to_iso(now),
            })
            self._touch_sync_state(asset, BALANCES, now)

        logger.info(f"Cached {len(results)} wallet balances for {short_address(asset)}")
        return snapshots

    def get_stale_accounts(self, asset: str, accounts: List[WatchedAccount],
                           max_age: Optional[timedelta] = None) -> List[WatchedAccount]:
        """Accounts whose cached balance is missing, errored or older than `max_age`."""
        max_age = max_age if max_age is not None else self.ttl.balances
        cached = self.get_balances(asset).by_address()
        now = self.clock()

        stale = []
        for account in accounts:
            snapshot = cached.get(account.key)
            if snapshot is None or snapshot.error or now - snapshot.last_updated_at > max_age:
                stale.append(account)
        return stale

    # ------------------------------------------------------------------
    # Transfers
    # ------------------------------------------------------------------

    def get_transfers(self, asset: str) -> TransferView:
        with self._lock:
            record = self._load(TRANSFERS, asset)
        last_sync = self._last_sync(record)
        transfers = [ClassifiedTransfer.from_dict(t) for t in (record or {}).get("transfers", [])]
        return TransferView(
            transfers=transfers,
            last_sync=last_sync,
            is_stale=is_stale(last_sync, self.ttl.transfers, self.clock()),
        )

    def merge_transfers(self, asset: str, transfers: List[ClassifiedTransfer]) -> MergeResult:
        """Add transfers whose signature is not cached yet; newest first."""
        with self._lock:
            now = self.clock()
            record = self._load(TRANSFERS, asset) or {}
            existing = [ClassifiedTransfer.from_dict(t) for t in record.get("transfers", [])]
            seen = {t.signature_id for t in existing}

            unique_new = []
            for transfer in transfers:
                if transfer.signature_id in seen:
                    continue
                seen.add(transfer.signature_id)
                unique_new.append(transfer)

            merged = _sort_newest_first(unique_new + existing)
            self._save(TRANSFERS, asset, {
                "transfers": [t.to_dict() for t in merged],
                "last_sync": to_iso(now),
            })
            self._touch_sync_state(asset, TRANSFERS, now)

        logger.info(
            f"Cached {len(unique_new)} new transactions (total: {len(merged)}) "
            f"for {short_address(asset)}")
        return MergeResult(added_count=len(unique_new), total_count=len(merged))

    def newest_transfer_time(self, asset: str) -> Optional[datetime]:
        for transfer in self.get_transfers(asset).transfers:
            if transfer.timestamp:
                return transfer.timestamp
        return None

    def known_transfer_ids(self, asset: str) -> Set[str]:
        return {t.signature_id for t in self.get_transfers(asset).transfers}

    # ------------------------------------------------------------------
    # Metadata and price
    # ------------------------------------------------------------------

    def get_metadata(self, asset: str) -> MetadataView:
        with self._lock:
            record = self._load(METADATA, asset)
        last_sync = self._last_sync(record)
        metadata = AssetMetadata.from_dict(record["metadata"]) if record and record.get("metadata") else None
        return MetadataView(
            metadata=metadata,
            last_sync=last_sync,
            is_stale=is_stale(last_sync, self.ttl.metadata, self.clock()),
        )

    def merge_metadata(self, asset: str, metadata: AssetMetadata) -> AssetMetadata:
        """Overlay the non-empty fields of `metadata` onto the cached entry."""
        with self._lock:
            now = self.clock()
            record = self._load(METADATA, asset) or {}
            merged = dict(record.get("metadata") or {})
            for name, value in metadata.to_dict().items():
                if value is not None:
                    merged[name] = value
            merged["cached_at"] = to_iso(now)

            self._save(METADATA, asset, {"metadata": merged, "last_sync": to_iso(now)})
            self._touch_sync_state(asset, METADATA, now)

        return AssetMetadata.from_dict(merged)

    def get_price(self, asset: str) -> PriceView:
        with self._lock:
            record = self._load(PRICE, asset)
        last_sync = self._last_sync(record)
        price = AssetPrice.from_dict(record["price"]) if record and record.get("price") else None
        return PriceView(
            price=price,
            last_sync=last_sync,
            is_stale=is_stale(last_sync, self.ttl.price, self.clock()),
        )

    def merge_price(self, asset: str, price: AssetPrice) -> AssetPrice:
        """Store the latest price and append it to the bounded price history."""
        with self._lock:
            now = self.clock()
            record = self._load(PRICE, asset) or {}
            previous = AssetPrice.from_dict(record["price"]) if record.get("price") else None

            history = list(previous.history[-(PRICE_HISTORY_LIMIT - 1):]) if previous else []
            history.append(PricePoint(price=price.price, timestamp=now))
            merged = AssetPrice(
                price=price.price,
                price_change_24h=price.price_change_24h,
                market_cap=price.market_cap,
                history=history,
                cached_at=now,
            )

            self._save(PRICE, asset, {"price": merged.to_dict(), "last_sync": to_iso(now)})
            self._touch_sync_state(asset, PRICE, now)

        return merged

    # ------------------------------------------------------------------
    # Unified reads
    # ------------------------------------------------------------------

    def get_instant_load_data(self, asset: str) -> InstantLoadData:
        """Cached balances, transfers and asset info for cold-start rendering."""
        with self._lock:
            balances = self.get_balances(asset)
            transfers = self.get_transfers(asset)
            metadata = self.get_metadata(asset)
            price = self.get_price(asset)

        asset_info = None
        if metadata.metadata:
            asset_info = {
                "name": metadata.metadata.name,
                "symbol": metadata.metadata.symbol,
                "image": metadata.metadata.image,
                "decimals": metadata.metadata.decimals,
                "price": price.price.price if price.price else 0.0,
                "price_change_24h": price.price.price_change_24h if price.price else 0.0,
                "market_cap": price.price.market_cap if price.price else 0.0,
            }

        return InstantLoadData(
            has_data=balances.has_data or transfers.has_data or metadata.has_data,
            balances=balances.snapshots,
            transfers=transfers.transfers,
            asset_info=asset_info,
            last_sync={
                BALANCES: balances.last_sync,
                TRANSFERS: transfers.last_sync,
                METADATA: metadata.last_sync,
                PRICE: price.last_sync,
            },
            staleness={
                BALANCES: balances.is_stale,
                TRANSFERS: transfers.is_stale,
                METADATA: metadata.is_stale,
                PRICE: price.is_stale,
            },
        )

    def get_sync_needs(self, asset: str, accounts: List[WatchedAccount]) -> SyncNeeds:
        """Partition a refresh into what must be fetched and what can be reused."""
        metadata = self.get_metadata(asset)
        price = self.get_price(asset)
        transfers = self.get_transfers(asset)
        stale = self.get_stale_accounts(asset, accounts)
        stale_keys = {a.key for a in stale}

        return SyncNeeds(
            needs_metadata=not metadata.has_data or metadata.is_stale,
            needs_price=not price.has_data or price.is_stale,
            needs_balances=bool(stale),
            needs_transfers=transfers.is_stale,
            stale_accounts=stale,
            fresh_accounts=[a for a in accounts if a.key not in stale_keys],
            newest_transfer_time=self.newest_transfer_time(asset),
        )

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def clear_asset(self, asset: str) -> None:
        """Remove every store's entry and the sync state for one asset."""
        with self._lock:
            for store in STORES:
                self.backend.delete(self._key(store, asset))
        logger.info(f"Cleared all cache for {short_address(asset)}")

    def clear_all(self) -> None:
        with self._lock:
            for key in self.backend.keys():
                if key.split("/", 1)[0] in STORES:
                    self.backend.delete(key)
        logger.info("All cache cleared")

    def assets(self) -> List[str]:
        with self._lock:
            keys = self.backend.keys()
        return sorted({
            key.split("/", 1)[1] for key in keys
            if "/" in key and key.split("/", 1)[0] in STORES
        })

    def stats(self) -> CacheStats:
        total_wallets = 0
        total_transfers = 0
        storage_bytes = 0

        with self._lock:
            assets = self.assets()
            for asset in assets:
                for store in STORES:
                    record = self.backend.get(self._key(store, asset))
                    if record is None:
                        continue
                    storage_bytes += len(json.dumps(record, default=str))
                    if store == BALANCES:
                        total_wallets += len(record.get("wallets", []))
                    elif store == TRANSFERS:
                        total_transfers += len(record.get("transfers", []))

        return CacheStats(
            asset_count=len(assets),
            total_wallets=total_wallets,
            total_transfers=total_transfers,
            storage_bytes=storage_bytes,
        )
