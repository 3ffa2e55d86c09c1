"""
Sync orchestrator: drives one refresh cycle at a time for the tracked asset.

A cycle walks IDLE -> FETCH_METADATA_PRICE -> FETCH_BALANCES ->
FETCH_TRANSFERS -> DONE, publishing progress along the way. Any blocking
error ends it in ERROR; a cancelled token ends it in CANCELLED without
reporting an error. Whatever was merged into the cache before the cycle
stopped stays there.
"""

import logging
import threading
from dataclasses import asdict
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from .cache import SyncCache
from .config import Config
from .errors import Cancelled, TrackerError
from .gateway import LedgerGateway
from .models import (
    AssetInfo, AssetMetadata, AssetPrice, BalanceResult, BalanceSnapshot,
    BatchProgress, ClassifiedTransfer, FetchStats, ProgressEvent, SavedProject,
    SyncReport, SyncStage, WalletRow, WatchedAccount, WatchList,
)
from .progress import CancellationToken, ProgressBus
from .storage import Storage
from .utils import address_key, is_valid_solana_address, normalize_address, short_address, utcnow

logger = logging.getLogger(__name__)

# Per-wallet transfer targets: (transfers, signature pages)
FULL_FETCH_LIMITS = (20, 3)
INCREMENTAL_FETCH_LIMITS = (10, 1)

# Progress ranges for each stage, in percent
METADATA_RANGE = (0, 15)
BALANCES_RANGE = (15, 55)
TRANSFERS_RANGE = (55, 95)
FINALIZE_PERCENT = 98


def _scaled(progress_range, percent: int) -> int:
    low, high = progress_range
    return low + round(percent / 100 * (high - low))


class SyncOrchestrator:
    """Owns the watch list, the tracked asset and the refresh state machine."""

    def __init__(self, gateway: LedgerGateway, cache: SyncCache,
                 storage: Optional[Storage] = None,
                 config: Optional[Config] = None,
                 bus: Optional[ProgressBus] = None,
                 clock: Callable[[], datetime] = utcnow):
        self.gateway = gateway
        self.cache = cache
        self.storage = storage or Storage()
        self.config = config or gateway.config
        self.bus = bus or ProgressBus()
        self.clock = clock

        self.asset_id: Optional[str] = None
        self.watch_list = WatchList()
        self.active_project_id: Optional[str] = None
        self.asset_info: Optional[AssetInfo] = None
        self.stage = SyncStage.IDLE
        self.error: Optional[str] = None
        self.last_updated: Optional[datetime] = None
        self.last_report: Optional[SyncReport] = None

        self._rows: List[WalletRow] = []
        self._rows_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._token: Optional[CancellationToken] = None
        self._force_full = False

    @classmethod
    def from_config(cls, config: Config) -> "SyncOrchestrator":
        return cls(
            LedgerGateway.from_config(config),
            SyncCache.on_disk(config.data_dir),
            storage=Storage.on_disk(config.data_dir),
            config=config,
        )

    # ------------------------------------------------------------------
    # Observable state
    # ------------------------------------------------------------------

    @property
    def in_progress(self) -> bool:
        return self._token is not None

    @property
    def rows(self) -> List[WalletRow]:
        with self._rows_lock:
            return list(self._rows)

    @property
    def force_full_pending(self) -> bool:
        return self._force_full

    def subscribe(self, listener: Callable[[ProgressEvent], None]) -> Callable[[], None]:
        return self.bus.subscribe(listener)

    def _publish(self, stage: SyncStage, message: str, percent: int, detail: str = "") -> None:
        self.stage = stage
        self.bus.publish(ProgressEvent(stage=stage, message=message,
                                       progress_percent=percent, detail=detail))

    # ------------------------------------------------------------------
    # Refresh cycle
    # ------------------------------------------------------------------

    def start_refresh(self, foreground: bool = True, force: bool = False) -> Optional[SyncReport]:
        """Run one refresh cycle in the calling thread.

        Returns None when another cycle is already running and `force` is not
        set. A forced refresh cancels the running cycle and proceeds.
        """
        with self._state_lock:
            if self._token is not None:
                if not force:
                    logger.info("Skipping refresh - already in progress")
                    return None
                logger.info("Forced refresh - cancelling the running cycle")
                self._token.cancel()
            token = CancellationToken()
            self._token = token

        report = SyncReport(stage=SyncStage.IDLE, full_fetch=False, started_at=self.clock())
        try:
            self._run_cycle(foreground, token, report)
        except Cancelled:
            logger.info("Refresh cycle was cancelled")
            report.stage = SyncStage.CANCELLED
            # A forced refresh has already taken over the progress stream
            if self._token is token:
                self._publish(SyncStage.CANCELLED, "Refresh cancelled", 0)
        except TrackerError as e:
            self._fail(report, str(e))
        finally:
            report.finished_at = self.clock()
            with self._state_lock:
                current = self._token is token
                if current:
                    self._token = None
            if current:
                self._clear_transient_rows()
            self.last_report = report

        return report

    def _fail(self, report: SyncReport, message: str) -> None:
        logger.error(f"Refresh failed: {message}")
        self.error = message
        report.stage = SyncStage.ERROR
        report.error = message
        self._publish(SyncStage.ERROR, "Error loading data", 0, message)

    def _valid_accounts(self) -> List[WatchedAccount]:
        accounts = self.watch_list.accounts
        valid = []
        for account in accounts:
            if is_valid_solana_address(account.address):
                valid.append(account)
            else:
                logger.warning(
                    f"Invalid wallet address skipped: {account.display_name or 'unnamed'} - {account.address}")
        return valid

    def _run_cycle(self, foreground: bool, token: CancellationToken, report: SyncReport) -> None:
        asset = self.asset_id
        if not asset or not is_valid_solana_address(asset):
            raise TrackerError("Invalid token mint address")

        accounts = self._valid_accounts()
        report.skipped_wallets = len(self.watch_list) - len(accounts)
        if not accounts:
            raise TrackerError("No valid wallet addresses found. Please check your wallet list.")

        self.error = None
        token.raise_if_cancelled()

        self._refresh_asset(asset)
        token.raise_if_cancelled()

        self._refresh_balances(asset, accounts, foreground, token, report)
        token.raise_if_cancelled()

        self._refresh_transfers(asset, accounts, foreground, token, report)

        self._publish(SyncStage.FETCH_TRANSFERS, "Processing transactions...",
                      FINALIZE_PERCENT, "Organizing activity data")
        self.last_updated = self.clock()
        self._snapshot_project()

        report.stage = SyncStage.DONE
        self._publish(SyncStage.DONE, "Up to date", 100)
        logger.info(
            f"Refresh complete for {short_address(asset)}: {report.balances_fetched} balances, "
            f"{report.transfers_added} new transfers ({'full' if report.full_fetch else 'incremental'})")

    def _refresh_asset(self, asset: str) -> None:
        self._publish(SyncStage.FETCH_METADATA_PRICE, "Fetching token data...", 5,
                      "Getting price and metadata from DexScreener")

        info = self.gateway.fetch_asset_info(asset)
        if info.error is None:
            self.asset_info = info
            self.cache.merge_metadata(asset, AssetMetadata(
                name=info.name, symbol=info.symbol, image=info.image))
            if info.price:
                self.cache.merge_price(asset, AssetPrice(
                    price=info.price, price_change_24h=info.price_change_24h,
                    market_cap=info.market_cap))
        elif self.asset_info is None:
            self.asset_info = info

        mint = self.gateway.fetch_mint_info(asset)
        if mint.error is None and self.asset_info.error is None:
            self.cache.merge_metadata(asset, AssetMetadata(
                name=self.asset_info.name, symbol=self.asset_info.symbol,
                decimals=mint.decimals, supply=mint.supply))

        self._publish(SyncStage.FETCH_METADATA_PRICE, "Token data loaded", METADATA_RANGE[1])

    # ------------------------------------------------------------------
    # Balances
    # ------------------------------------------------------------------

    def _pending_rows(self, accounts: List[WatchedAccount]) -> List[WalletRow]:
        policy = self.config.balance_policy()
        size = max(1, policy.group_size)
        rows = []
        for index, account in enumerate(accounts):
            wait = round((index // size) * policy.group_delay, 1)
            rows.append(WalletRow(
                account=account,
                status="pending",
                queue_position=index + 1,
                estimated_wait=wait if wait > 0 else None,
            ))
        return rows

    def _overlay_result(self, result: BalanceResult) -> None:
        """Show one arriving balance without disturbing other rows."""
        key = address_key(result.address)
        with self._rows_lock:
            for row in self._rows:
                if row.account.key != key:
                    continue
                if result.error:
                    row.error = result.error
                else:
                    if row.status is None:
                        row.previous_ui_amount = row.ui_amount
                    row.ui_amount = result.ui_amount
                    row.error = None
                row.status = None
                row.queue_position = None
                row.estimated_wait = None
                return

    def _mark_loading(self, progress: BatchProgress, group_size: int) -> None:
        """After a group finishes, the next group is loading and the rest wait."""
        policy = self.config.balance_policy()
        with self._rows_lock:
            for index, row in enumerate(self._rows):
                if row.status is None:
                    continue
                if index < progress.completed + group_size:
                    row.status = "loading"
                    row.estimated_wait = None
                else:
                    groups_ahead = (index - progress.completed) // group_size
                    wait = round(groups_ahead * policy.group_delay, 1)
                    row.estimated_wait = wait if wait > 0 else None

    def _refresh_balances(self, asset: str, accounts: List[WatchedAccount], foreground: bool,
                          token: CancellationToken, report: SyncReport) -> None:
        policy = self.config.balance_policy()
        with self._rows_lock:
            if foreground:
                self._rows = self._pending_rows(accounts)
                if self._rows:
                    for row in self._rows[:max(1, policy.group_size)]:
                        row.status = "loading"
                        row.estimated_wait = None
            else:
                # Background refreshes keep every visible row and only add new ones
                known = {row.account.key for row in self._rows}
                self._rows.extend(WalletRow(account=a) for a in accounts if a.key not in known)

        self._publish(SyncStage.FETCH_BALANCES, "Scanning wallet balances...", BALANCES_RANGE[0],
                      f"Checking {len(accounts)} wallets (rate limited)")
        token.raise_if_cancelled()

        def on_progress(progress: BatchProgress) -> None:
            if foreground:
                self._mark_loading(progress, max(1, policy.group_size))
            self._publish(
                SyncStage.FETCH_BALANCES,
                "Scanning wallet balances..." if foreground else "Refreshing balances...",
                _scaled(BALANCES_RANGE, progress.percent),
                f"Wallet {progress.completed}/{progress.total}",
            )

        results = self.gateway.fetch_balances(
            accounts, asset, policy=policy, on_progress=on_progress,
            token=token, on_result=self._overlay_result)

        snapshots = self.cache.merge_balances(asset, results)
        self._apply_snapshots(accounts, snapshots)

        report.balances_fetched = sum(1 for r in results if r.ok)
        report.balance_errors = sum(1 for r in results if not r.ok)
        self._publish(SyncStage.FETCH_BALANCES, "Processing balances...", BALANCES_RANGE[1],
                      "Analyzing wallet data")

    def _apply_snapshots(self, accounts: List[WatchedAccount],
                         snapshots: List[BalanceSnapshot]) -> None:
        by_key = {address_key(s.address): s for s in snapshots}
        watched = {a.key for a in accounts}
        with self._rows_lock:
            rows = {row.account.key: row for row in self._rows}
            ordered = []
            for account in self.watch_list:
                row = rows.get(account.key) or WalletRow(account=account)
                snapshot = by_key.get(account.key)
                if snapshot is not None and account.key in watched:
                    row.ui_amount = snapshot.ui_amount
                    row.previous_ui_amount = snapshot.previous_ui_amount
                    row.error = snapshot.error
                ordered.append(row)
            self._rows = ordered

    def _rows_from_snapshots(self, snapshots: List[BalanceSnapshot]) -> None:
        by_key = {address_key(s.address): s for s in snapshots}
        rows = []
        for account in self.watch_list:
            snapshot = by_key.get(account.key)
            if snapshot is None:
                rows.append(WalletRow(account=account))
            else:
                rows.append(WalletRow(
                    account=account,
                    ui_amount=snapshot.ui_amount,
                    previous_ui_amount=snapshot.previous_ui_amount,
                    error=snapshot.error,
                ))
        with self._rows_lock:
            self._rows = rows

    def _clear_transient_rows(self) -> None:
        with self._rows_lock:
            for row in self._rows:
                row.status = None
                row.queue_position = None
                row.estimated_wait = None

    # ------------------------------------------------------------------
    # Transfers
    # ------------------------------------------------------------------

    def _refresh_transfers(self, asset: str, accounts: List[WatchedAccount], foreground: bool,
                           token: CancellationToken, report: SyncReport) -> None:
        existing = self.cache.get_transfers(asset)
        forced = self._force_full
        if forced:
            logger.info("Force full fetch flag was set - doing complete fetch")
            self._force_full = False

        full = foreground or not existing.has_data or forced
        report.full_fetch = full
        since = None if full else self.cache.newest_transfer_time(asset)
        known_ids = {t.signature_id for t in existing.transfers}
        target_count, max_pages = FULL_FETCH_LIMITS if full else INCREMENTAL_FETCH_LIMITS

        logger.info(
            f"{'FULL' if full else 'Incremental'} transfer fetch for {len(accounts)} wallets "
            f"(foreground={foreground}, cached={len(existing.transfers)}, forced={forced})")

        message = "Fetching transaction history..." if full else "Checking for new activity..."
        self._publish(SyncStage.FETCH_TRANSFERS, message, TRANSFERS_RANGE[0],
                      f"Scanning {len(accounts)} wallets")

        stats_lock = threading.Lock()
        totals = FetchStats()

        def worker(account: WatchedAccount) -> List[ClassifiedTransfer]:
            transfers, stats = self.gateway.fetch_transaction_history(
                account.address, asset,
                target_count=target_count,
                max_pages=max_pages,
                since=since,
                known_ids=known_ids,
                token=token,
            )
            with stats_lock:
                totals.details_failed += stats.details_failed
                totals.parse_failures += stats.parse_failures
            if transfers:
                logger.debug(f"{account.display_name or short_address(account.address)}: {len(transfers)} txs")
            return transfers

        def on_progress(progress: BatchProgress) -> None:
            self._publish(SyncStage.FETCH_TRANSFERS, message,
                          _scaled(TRANSFERS_RANGE, progress.percent),
                          f"Scanning wallet {progress.completed} of {progress.total}")

        per_wallet = self.gateway.run_batched(
            accounts, worker, self.config.transfer_policy(),
            on_progress=on_progress, token=token, label="transfers")

        found = [transfer for transfers in per_wallet for transfer in transfers]
        report.detail_failures = totals.details_failed
        report.parse_failures = totals.parse_failures
        if found:
            result = self.cache.merge_transfers(asset, found)
            report.transfers_added = result.added_count
            report.transfers_total = result.total_count
        else:
            report.transfers_total = len(existing.transfers)

    # ------------------------------------------------------------------
    # Control surface
    # ------------------------------------------------------------------

    def cancel(self) -> None:
        token = self._token
        if token is not None:
            logger.info("Cancelling fetch...")
            token.cancel()

    def force_full_refresh(self) -> None:
        """Make the next cycle a full fetch."""
        self._force_full = True

    def manual_refresh(self) -> Optional[SyncReport]:
        self._force_full = True
        logger.info("Manual refresh - forcing full fetch")
        return self.start_refresh(foreground=True)

    def _reset_view(self) -> None:
        self.gateway.clear()
        with self._rows_lock:
            self._rows = []
        self._force_full = True

    def set_asset(self, asset_id: str, preview: Optional[AssetInfo] = None) -> None:
        """Switch the tracked asset; the next cycle is a full fetch."""
        self.asset_id = normalize_address(asset_id) or None
        self.active_project_id = None
        self.asset_info = preview
        self._reset_view()
        self.storage.session.save_asset(self.asset_id)
        self.storage.session.save_active_project(None)
        logger.info(f"Tracking asset {short_address(self.asset_id)}")

    def add_wallets(self, accounts: List[WatchedAccount]) -> List[WatchedAccount]:
        added = self.watch_list.add(accounts)
        self.storage.session.save_wallets(self.watch_list.accounts)
        return added

    def replace_wallets(self, accounts: List[WatchedAccount]) -> None:
        self.watch_list.replace(accounts)
        self._reset_view()
        self.storage.session.save_wallets(self.watch_list.accounts)
        logger.info(f"Replaced watch list with {len(self.watch_list)} wallets")

    def remove_wallet(self, account_id: str) -> bool:
        removed = self.watch_list.remove(account_id)
        if removed:
            with self._rows_lock:
                self._rows = [row for row in self._rows if row.account.id != account_id]
            self.storage.session.save_wallets(self.watch_list.accounts)
        return removed

    def deep_fetch_wallet(self, address: str) -> List[ClassifiedTransfer]:
        """Exhaustive history scan for one wallet, merged into the cache."""
        if not self.asset_id:
            return []

        logger.info(f"Starting deep history fetch for {short_address(address)}")
        try:
            transfers = self.gateway.deep_fetch_transactions(address, self.asset_id)
        except TrackerError as e:
            logger.error(f"Deep fetch failed for {short_address(address)}: {e}")
            return []

        if transfers:
            self.cache.merge_transfers(self.asset_id, transfers)
        logger.info(f"Found {len(transfers)} transactions for {short_address(address)}")
        return transfers

    def _asset_info_from_cache(self, asset: str, cached: Optional[Dict[str, Any]]) -> Optional[AssetInfo]:
        if not cached:
            return None
        return AssetInfo(
            address=asset,
            name=cached.get("name") or "Unknown Token",
            symbol=cached.get("symbol") or "???",
            image=cached.get("image"),
            price=float(cached.get("price") or 0.0),
            price_change_24h=float(cached.get("price_change_24h") or 0.0),
            market_cap=float(cached.get("market_cap") or 0.0),
        )

    def _restore_from_cache(self) -> bool:
        """Populate rows and asset info from the sync cache, then the project snapshot."""
        asset = self.asset_id
        instant = self.cache.get_instant_load_data(asset)
        if instant.has_data and instant.balances:
            logger.info(
                f"Instant load from cache: {len(instant.balances)} wallets, "
                f"{len(instant.transfers)} transactions")
            self._rows_from_snapshots(instant.balances)
            self.asset_info = self._asset_info_from_cache(asset, instant.asset_info) or self.asset_info
            self.last_updated = instant.last_sync.get("balances")
            return True

        project = self.storage.projects.get_project(self.active_project_id) if self.active_project_id else None
        if project and project.cached_balances:
            logger.info("Using project snapshot for instant display")
            snapshots = [BalanceSnapshot.from_dict(item) for item in project.cached_balances]
            self.cache.merge_balances(asset, [
                BalanceResult(address=s.address, raw_amount=s.raw_amount, decimals=s.decimals,
                              ui_amount=s.ui_amount, error=s.error)
                for s in snapshots
            ])
            if project.cached_transfers:
                self.cache.merge_transfers(
                    asset, [ClassifiedTransfer.from_dict(t) for t in project.cached_transfers])
            self._rows_from_snapshots(snapshots)
            self.asset_info = self._asset_info_from_cache(asset, project.cached_asset_info) or self.asset_info
            self.last_updated = project.last_scanned
            return True

        return False

    def load_project(self, project: SavedProject) -> bool:
        """Switch to a saved project; returns True when cached data was shown."""
        self.gateway.clear()
        self.active_project_id = project.id
        self.asset_id = normalize_address(project.asset_id)
        self.watch_list.replace(project.wallets)
        self.storage.session.save_asset(self.asset_id)
        self.storage.session.save_wallets(self.watch_list.accounts)
        self.storage.session.save_active_project(project.id)

        self.asset_info = AssetInfo(
            address=self.asset_id, name=project.name, symbol=project.symbol,
            image=project.image, market_cap=project.market_cap)

        restored = self._restore_from_cache()
        if not restored:
            logger.info("No cached data for project, next refresh is a full fetch")
            with self._rows_lock:
                self._rows = []
        self._force_full = not restored
        return restored

    def save_current_project(self) -> Optional[SavedProject]:
        if not self.asset_id or self.asset_info is None:
            return None

        project = self.storage.projects.save_project(SavedProject(
            id=self.active_project_id or "",
            asset_id=self.asset_id,
            name=self.asset_info.name,
            symbol=self.asset_info.symbol,
            image=self.asset_info.image,
            market_cap=self.asset_info.market_cap,
            wallets=self.watch_list.accounts,
        ))
        self.active_project_id = project.id
        self.storage.session.save_active_project(project.id)
        return project

    def _snapshot_project(self) -> None:
        """Copy the latest cache state into the active saved project."""
        if not self.active_project_id:
            return
        if self.asset_info and (self.asset_info.price > 0 or self.asset_info.market_cap > 0):
            self.save_current_project()

        asset = self.asset_id
        self.storage.projects.update_cached_data(
            self.active_project_id,
            balances=[s.to_dict() for s in self.cache.get_balances(asset).snapshots],
            transfers=[t.to_dict() for t in self.cache.get_transfers(asset).transfers],
            asset_info=asdict(self.asset_info) if self.asset_info else None,
        )

    def delete_project(self, project_id: str) -> bool:
        deleted = self.storage.projects.delete_project(project_id)
        if deleted and project_id == self.active_project_id:
            self.active_project_id = None
            self.storage.session.save_active_project(None)
        return deleted

    def clear_all(self) -> None:
        """Forget the tracked asset and wallets; settings and other projects are kept."""
        self.cancel()
        self.gateway.clear()

        if self.active_project_id:
            logger.info(f"Deleting active project: {self.active_project_id}")
            self.storage.projects.delete_project(self.active_project_id)
        if self.asset_id:
            self.cache.clear_asset(self.asset_id)

        self.watch_list.replace([])
        self.asset_id = None
        self.asset_info = None
        self.active_project_id = None
        self.last_updated = None
        self.error = None
        self.stage = SyncStage.IDLE
        with self._rows_lock:
            self._rows = []
        self.storage.session.clear()
        self._force_full = True
        logger.info("Cleared all data and deleted active project")

    def bootstrap(self) -> bool:
        """Restore the last session; returns True when cached data is on screen."""
        self.watch_list.replace(self.storage.session.load_wallets())
        self.asset_id = self.storage.session.load_asset()
        self.active_project_id = self.storage.session.load_active_project()
        if self.active_project_id:
            logger.info(f"Restored active project: {self.active_project_id}")

        if not self.asset_id:
            return False
        return self._restore_from_cache()


class RefreshScheduler:
    """Interval timer plus debounced refresh requests for one orchestrator."""

    def __init__(self, orchestrator: SyncOrchestrator, interval: Optional[float] = None,
                 debounce: Optional[float] = None):
        config = orchestrator.config
        self.orchestrator = orchestrator
        self.interval = config.refresh_interval if interval is None else interval
        self.debounce = config.debounce_seconds if debounce is None else debounce

        self._lock = threading.Lock()
        self._timer: Optional[threading.Timer] = None
        self._pending_foreground = False
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def request_refresh(self, foreground: bool = False) -> None:
        """Queue a refresh; requests inside the debounce window share one cycle."""
        with self._lock:
            self._pending_foreground = self._pending_foreground or foreground
            if self._timer is not None:
                self._timer.cancel()
            self._timer = threading.Timer(self.debounce, self.flush)
            self._timer.daemon = True
            self._timer.start()

    def flush(self) -> Optional[SyncReport]:
        """Run the queued refresh now, if any.

        A request that lands while a cycle is already running is queued again
        so it runs once the current cycle has finished.
        """
        with self._lock:
            if self._timer is None:
                return None
            self._timer.cancel()
            self._timer = None
            foreground = self._pending_foreground
            self._pending_foreground = False
        report = self.orchestrator.start_refresh(foreground=foreground)
        if report is None and not self._stop.is_set():
            logger.info("Refresh already running, requeueing request")
            self.request_refresh(foreground=foreground)
        return report

    @property
    def pending(self) -> bool:
        return self._timer is not None

    def _loop(self) -> None:
        while not self._stop.wait(self.interval):
            self.request_refresh(foreground=False)

    def start(self, foreground: bool = True) -> None:
        """Queue an initial refresh and start polling every `interval` seconds."""
        self._stop.clear()
        self.request_refresh(foreground=foreground)
        if self.interval and self.interval > 0:
            self._thread = threading.Thread(target=self._loop, name="refresh-scheduler", daemon=True)
            self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
        if self._thread is not None:
            self._thread.join(timeout=1)
            self._thread = None
