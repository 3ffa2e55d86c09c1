"""
Ledger gateway: the only component that talks to the chain provider and the
price aggregator.

Every read goes through a short-lived response cache and an in-flight table
so that overlapping callers (a manual refresh racing the polling timer, for
example) share one request. Multi-account reads are split into groups that run
concurrently inside the group and sequentially between groups, with a pause
after every group but the last.
"""

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, Dict, List, Optional, Sequence, Set, Tuple, TypeVar

from .api_clients import DexScreenerClient, SolanaRpcClient
from .classifier import classify
from .config import BatchPolicy, Config
from .errors import Cancelled, InvalidAddress, RateLimited, RemoteUnavailable
from .models import (
    AssetInfo, AssetPrice, BalanceResult, BatchProgress, ClassifiedTransfer,
    FetchStats, MintInfo, WatchedAccount,
)
from .progress import CancellationToken
from .utils import (
    address_key, from_unix, is_valid_solana_address, normalize_address,
    raw_to_ui, short_address, utcnow,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")

# Response cache lifetimes in seconds
BALANCE_TTL = 15
PRICE_TTL = 30
METADATA_TTL = 5 * 60

DEFAULT_DECIMALS = 9
DEEP_FETCH_PAGE_LIMIT = 15
DAS_PAGE_LIMIT = 100


def _validate(address: str, kind: str) -> str:
    if not is_valid_solana_address(address):
        raise InvalidAddress(address, kind)
    return normalize_address(address)


def _address_of(account: Any) -> str:
    return account.address if isinstance(account, WatchedAccount) else account


class LedgerGateway:
    """Rate-limited, cached and deduplicated access to balances and history."""

    def __init__(self, rpc: SolanaRpcClient, market: DexScreenerClient, config: Config,
                 sleep: Optional[Callable[[float], None]] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.rpc = rpc
        self.market = market
        self.config = config
        self._sleep = sleep
        self._clock = clock
        self._cache: Dict[Tuple[str, ...], Tuple[float, Any]] = {}
        self._cache_lock = threading.Lock()
        self._pending: Dict[Tuple[str, ...], Future] = {}
        self._pending_lock = threading.Lock()

    @classmethod
    def from_config(cls, config: Config) -> "LedgerGateway":
        return cls(SolanaRpcClient.from_config(config), DexScreenerClient(config), config)

    # ------------------------------------------------------------------
    # Response cache and in-flight deduplication
    # ------------------------------------------------------------------

    def _get_cached(self, key: Tuple[str, ...], ttl: float) -> Optional[Any]:
        with self._cache_lock:
            entry = self._cache.get(key)
        if entry and self._clock() - entry[0] < ttl:
            return entry[1]
        return None

    def _set_cache(self, key: Tuple[str, ...], value: Any) -> None:
        with self._cache_lock:
            self._cache[key] = (self._clock(), value)

    def _deduplicated(self, key: Tuple[str, ...], loader: Callable[[], T],
                      ttl: Optional[float] = None) -> T:
        """Run `loader` once per key; concurrent callers wait on the same result.

        With `ttl`, the response cache is checked again once this caller owns
        the key, since a request that just finished may have filled it.
        """
        with self._pending_lock:
            future = self._pending.get(key)
            owner = future is None
            if owner:
                future = Future()
                self._pending[key] = future

        if not owner:
            return future.result()

        try:
            result = self._get_cached(key, ttl) if ttl is not None else None
            if result is None:
                result = loader()
        except BaseException as e:
            future.set_exception(e)
            raise
        else:
            future.set_result(result)
            return result
        finally:
            with self._pending_lock:
                self._pending.pop(key, None)

    def clear(self) -> None:
        """Drop cached responses, e.g. when switching the tracked asset."""
        with self._cache_lock:
            self._cache.clear()
        with self._pending_lock:
            self._pending.clear()

    # ------------------------------------------------------------------
    # Batching
    # ------------------------------------------------------------------

    def run_batched(self, items: Sequence[T], worker: Callable[[T], R], policy: BatchPolicy,
                    on_progress: Optional[Callable[[BatchProgress], None]] = None,
                    token: Optional[CancellationToken] = None,
                    label: str = "batch") -> List[R]:
        """Apply `worker` to every item, one group at a time.

        Results come back in input order. The token is checked before each
        group is dispatched and during the pause between groups; a cancelled
        token raises `Cancelled` and leaves later groups untouched.
        """
        size = max(1, policy.group_size)
        total = len(items)
        total_groups = (total + size - 1) // size
        results: List[R] = []

        logger.info(
            f"[{label}] {total} items in {total_groups} groups "
            f"(group size: {size}, delay: {policy.group_delay}s)")

        for group_index, start in enumerate(range(0, total, size), 1):
            if token:
                token.raise_if_cancelled()

            group = items[start:start + size]
            logger.debug(f"[{label}] group {group_index}/{total_groups} ({len(group)} items)")

            with ThreadPoolExecutor(max_workers=len(group)) as pool:
                results.extend(pool.map(worker, group))

            if on_progress:
                completed = len(results)
                on_progress(BatchProgress(
                    completed=completed,
                    total=total,
                    percent=round(completed / total * 100),
                ))

            if start + size < total:
                logger.debug(f"[{label}] rate limit pause: {policy.group_delay}s")
                self._pause(policy.group_delay, token)

        return results

    def _pause(self, seconds: float, token: Optional[CancellationToken]) -> None:
        """Wait between groups; a cancel during the wait ends it early."""
        if self._sleep is not None:
            self._sleep(seconds)
            if token:
                token.raise_if_cancelled()
        elif token:
            if token.wait(seconds):
                raise Cancelled("Fetch cancelled")
        else:
            time.sleep(seconds)

    # ------------------------------------------------------------------
    # Balances
    # ------------------------------------------------------------------

    def _balance_via_rpc(self, account: str, asset: str) -> BalanceResult:
        token_accounts = self.rpc.get_token_accounts_by_owner(account, asset)

        total = 0
        decimals = DEFAULT_DECIMALS
        for token_account in token_accounts:
            info = token_account["account"]["data"]["parsed"]["info"]
            total += int(info["tokenAmount"]["amount"])
            decimals = int(info["tokenAmount"]["decimals"])

        return BalanceResult(address=account, raw_amount=total, decimals=decimals,
                             ui_amount=raw_to_ui(total, decimals), fetched_at=utcnow())

    def _balance_via_das(self, account: str, asset: str) -> BalanceResult:
        asset_key = address_key(asset)
        page = 1
        while True:
            items = self.rpc.get_assets_by_owner(account, page=page, limit=DAS_PAGE_LIMIT)
            for item in items:
                token_info = item.get("token_info") or {}
                if address_key(item.get("id") or "") == asset_key or \
                        address_key(token_info.get("mint") or "") == asset_key:
                    raw = int(token_info.get("balance") or 0)
                    decimals = int(token_info.get("decimals", DEFAULT_DECIMALS))
                    return BalanceResult(address=account, raw_amount=raw, decimals=decimals,
                                         ui_amount=raw_to_ui(raw, decimals), fetched_at=utcnow())
            # A short page is the last one
            if len(items) < DAS_PAGE_LIMIT:
                break
            page += 1

        logger.debug(f"{short_address(account)} holds no {short_address(asset)} across {page} asset pages")
        return BalanceResult(address=account, raw_amount=0, decimals=DEFAULT_DECIMALS,
                             ui_amount=0.0, fetched_at=utcnow())

    def fetch_balance(self, account: str, asset: str) -> BalanceResult:
        """Balance of `asset` held by `account`.

        Raises InvalidAddress for malformed input; remote failures come back
        as a result with `error` set.
        """
        account = _validate(account, "wallet address")
        asset = _validate(asset, "token mint")

        key = ("balance", account, asset)
        cached = self._get_cached(key, BALANCE_TTL)
        if cached is not None:
            return cached

        def load() -> BalanceResult:
            logger.debug(f"Fetching balance for {short_address(account)}")
            try:
                if self.rpc.is_privileged:
                    result = self._balance_via_das(account, asset)
                else:
                    result = self._balance_via_rpc(account, asset)
            except RateLimited as e:
                logger.warning(
                    f"Rate limited fetching {short_address(account)}: {e}. "
                    "Consider adding a Helius API key.")
                return BalanceResult(address=account, raw_amount=0, decimals=DEFAULT_DECIMALS,
                                     ui_amount=0.0, fetched_at=utcnow(), error=str(e))
            except (RemoteUnavailable, KeyError, TypeError, ValueError) as e:
                logger.error(f"Balance fetch FAILED for {short_address(account)}: {e}")
                return BalanceResult(address=account, raw_amount=0, decimals=DEFAULT_DECIMALS,
                                     ui_amount=0.0, fetched_at=utcnow(),
                                     error=str(e) or "RPC request failed")
            self._set_cache(key, result)
            return result

        return self._deduplicated(key, load, BALANCE_TTL)

    def _fetch_balance_isolated(self, account: str, asset: str) -> BalanceResult:
        try:
            return self.fetch_balance(account, asset)
        except InvalidAddress as e:
            logger.warning(str(e))
            return BalanceResult(address=account, raw_amount=0, decimals=DEFAULT_DECIMALS,
                                 ui_amount=0.0, error=str(e))

    def fetch_balances(self, accounts: Sequence[Any], asset: str,
                       policy: Optional[BatchPolicy] = None,
                       on_progress: Optional[Callable[[BatchProgress], None]] = None,
                       token: Optional[CancellationToken] = None,
                       on_result: Optional[Callable[[BalanceResult], None]] = None,
                       ) -> List[BalanceResult]:
        """One BalanceResult per input account, in input order.

        `on_result` sees each result as soon as its request finishes, before
        the rest of its group.
        """
        _validate(asset, "token mint")
        addresses = [_address_of(account) for account in accounts]

        def worker(address: str) -> BalanceResult:
            result = self._fetch_balance_isolated(address, asset)
            if on_result:
                on_result(result)
            return result

        results = self.run_batched(
            addresses,
            worker,
            policy or self.config.balance_policy(),
            on_progress=on_progress,
            token=token,
            label="balances",
        )
        failures = sum(1 for r in results if r.error)
        logger.info(f"Balances completed: {len(results)} wallets, {failures} errors")
        return results

    # ------------------------------------------------------------------
    # Transaction history
    # ------------------------------------------------------------------

    def _fetch_details(self, signatures: List[Dict[str, Any]],
                       stats: FetchStats) -> List[Optional[Dict[str, Any]]]:
        def load(sig: Dict[str, Any]) -> Optional[Dict[str, Any]]:
            try:
                return self.rpc.get_transaction(sig["signature"])
            except RemoteUnavailable as e:
                logger.debug(f"Detail fetch failed for {sig['signature'][:12]}: {e}")
                return None

        with ThreadPoolExecutor(max_workers=len(signatures)) as pool:
            details = list(pool.map(load, signatures))

        for detail in details:
            if detail is None:
                stats.details_failed += 1
            else:
                stats.details_fetched += 1
        return details

    def fetch_transaction_history(self, account: str, asset: str,
                                  target_count: int = 15,
                                  max_pages: int = 3,
                                  since: Optional[Any] = None,
                                  known_ids: Optional[Set[str]] = None,
                                  deep: bool = False,
                                  token: Optional[CancellationToken] = None,
                                  ) -> Tuple[List[ClassifiedTransfer], FetchStats]:
        """Page through `account`'s signatures and classify those touching `asset`.

        `since` and `known_ids` turn this into an incremental fetch: known
        signatures are skipped without a detail request, and paging stops once
        a page reaches back past `since`.
        """
        account = _validate(account, "wallet address")
        asset = _validate(asset, "token mint")

        stats = FetchStats()
        transfers: List[ClassifiedTransfer] = []
        before: Optional[str] = None
        batch_size = max(1, self.config.detail_batch_size)

        logger.debug(
            f"Fetching txs for {short_address(account)} (max_pages: {max_pages}, "
            f"target: {target_count}, deep: {deep}, since: {since})")

        try:
            while (stats.pages < max_pages or deep) and not stats.reached_known_data:
                if token:
                    token.raise_if_cancelled()

                signatures = self.rpc.get_signatures_for_address(
                    account, limit=self.config.signatures_per_page, before=before)
                if not signatures:
                    break

                stats.pages += 1
                stats.signatures_checked += len(signatures)
                before = signatures[-1]["signature"]

                if since is not None:
                    oldest = from_unix(signatures[-1].get("blockTime"))
                    if oldest is not None and oldest < since:
                        signatures = [
                            s for s in signatures
                            if s.get("blockTime") and from_unix(s["blockTime"]) >= since
                        ]
                        # Everything older is already cached; finish after this page
                        stats.reached_known_data = True
                        if not signatures:
                            break

                if known_ids:
                    signatures = [s for s in signatures if s["signature"] not in known_ids]

                for start in range(0, len(signatures), batch_size):
                    if token:
                        token.raise_if_cancelled()

                    batch = signatures[start:start + batch_size]
                    details = self._fetch_details(batch, stats)

                    for sig, detail in zip(batch, details):
                        if detail is None:
                            continue
                        transfer = classify(
                            detail, account, asset,
                            signature_id=sig["signature"],
                            timestamp=from_unix(sig.get("blockTime")),
                            policy=self.config.classifier,
                            stats=stats,
                        )
                        if transfer is None:
                            continue
                        transfers.append(transfer)
                        if not deep and len(transfers) >= target_count:
                            self._log_history(account, transfers, stats)
                            return transfers, stats

                if deep and stats.pages >= DEEP_FETCH_PAGE_LIMIT:
                    break
        except RemoteUnavailable as e:
            logger.error(f"Error fetching transactions for {short_address(account)}: {e}")

        self._log_history(account, transfers, stats)
        return transfers, stats

    def _log_history(self, account: str, transfers: List[ClassifiedTransfer],
                     stats: FetchStats) -> None:
        logger.debug(
            f"Wallet {short_address(account)} - found {len(transfers)} token txs | "
            f"checked {stats.signatures_checked} sigs | fetched {stats.details_fetched} txs | "
            f"{stats.details_failed} failures | {stats.pages} pages")

    def fetch_transaction_page(self, account: str, asset: str, **options: Any) -> List[ClassifiedTransfer]:
        transfers, _ = self.fetch_transaction_history(account, asset, **options)
        return transfers

    def deep_fetch_transactions(self, account: str, asset: str,
                                token: Optional[CancellationToken] = None) -> List[ClassifiedTransfer]:
        """Exhaustive history scan used to find where a balance came from."""
        return self.fetch_transaction_page(
            account, asset, target_count=100, max_pages=DEEP_FETCH_PAGE_LIMIT, deep=True, token=token)

    # ------------------------------------------------------------------
    # Asset metadata and price
    # ------------------------------------------------------------------

    def _best_pair(self, asset: str) -> Optional[Dict[str, Any]]:
        key = ("pair", asset)
        cached = self._get_cached(key, PRICE_TTL)
        if cached is not None:
            return cached

        def load() -> Optional[Dict[str, Any]]:
            pair = self.market.get_best_pair(asset)
            if pair:
                self._set_cache(key, pair)
            return pair

        return self._deduplicated(key, load, PRICE_TTL)

    def fetch_asset_info(self, asset: str) -> AssetInfo:
        """Name, symbol, image and market data for the tracked mint."""
        asset = _validate(asset, "token mint")
        metadata_key = ("metadata", asset)
        cached_metadata = self._get_cached(metadata_key, METADATA_TTL)

        try:
            pair = self._best_pair(asset)
        except RemoteUnavailable as e:
            logger.error(f"Error fetching token info: {e}")
            return AssetInfo(address=asset, name="Error", error=str(e))

        if not pair:
            return AssetInfo(address=asset)

        base_token = pair.get("baseToken") or {}
        metadata = cached_metadata or {
            "name": base_token.get("name") or "Unknown",
            "symbol": base_token.get("symbol") or "???",
            "image": (pair.get("info") or {}).get("imageUrl"),
        }
        if cached_metadata is None:
            self._set_cache(metadata_key, metadata)

        return AssetInfo(
            address=asset,
            name=metadata["name"],
            symbol=metadata["symbol"],
            image=metadata["image"],
            price=float(pair.get("priceUsd") or 0),
            price_change_24h=float((pair.get("priceChange") or {}).get("h24") or 0),
            market_cap=float(pair.get("marketCap") or 0),
            fdv=float(pair.get("fdv") or 0),
            liquidity=float((pair.get("liquidity") or {}).get("usd") or 0),
            volume_24h=float((pair.get("volume") or {}).get("h24") or 0),
            pair_address=pair.get("pairAddress"),
            dex_id=pair.get("dexId"),
            url=pair.get("url"),
            source="DexScreener",
        )

    def fetch_price(self, asset: str) -> Optional[AssetPrice]:
        """Price-only read sharing the pair cache; None when unavailable."""
        asset = _validate(asset, "token mint")
        try:
            pair = self._best_pair(asset)
        except RemoteUnavailable as e:
            logger.error(f"Error fetching token price: {e}")
            return None
        if not pair:
            return None
        return AssetPrice(
            price=float(pair.get("priceUsd") or 0),
            price_change_24h=float((pair.get("priceChange") or {}).get("h24") or 0),
            market_cap=float(pair.get("marketCap") or 0),
        )

    def fetch_mint_info(self, asset: str) -> MintInfo:
        """Decimals, supply and mint authority read from the ledger."""
        asset = _validate(asset, "token mint")
        key = ("mint", asset)
        cached = self._get_cached(key, METADATA_TTL)
        if cached is not None:
            return cached

        def load() -> MintInfo:
            try:
                account = self.rpc.get_account_info(asset)
            except RemoteUnavailable as e:
                logger.error(f"Error fetching token metadata: {e}")
                return MintInfo(error=str(e))

            if not account:
                return MintInfo(error="Token mint not found")

            parsed = (account.get("data") or {}).get("parsed") if isinstance(account.get("data"), dict) else None
            if not parsed:
                return MintInfo()

            info = parsed.get("info") or {}
            result = MintInfo(
                decimals=int(info.get("decimals", DEFAULT_DECIMALS)),
                supply=str(info.get("supply", "0")),
                mint_authority=info.get("mintAuthority"),
            )
            self._set_cache(key, result)
            return result

        return self._deduplicated(key, load, METADATA_TTL)
