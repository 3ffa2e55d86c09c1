"""
Data models for Solana wallet tracking.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from .utils import from_iso, to_iso, address_key

BALANCE_HISTORY_LIMIT = 10
PRICE_HISTORY_LIMIT = 100


class TransferCategory(str, Enum):
    """Semantic effect of one transaction on a watched wallet."""
    ACQUIRE = "ACQUIRE"
    DISPOSE = "DISPOSE"
    TRANSFER_IN = "TRANSFER_IN"
    TRANSFER_OUT = "TRANSFER_OUT"


class ActivityStatus(str, Enum):
    OUT = "OUT"
    UNKNOWN = "UNKNOWN"
    SELLING = "SELLING"
    SOLD = "SOLD"
    TRANSFERRED = "TRANSFERRED"
    RECEIVED = "RECEIVED"
    BUY = "BUY"
    BOUGHT_MORE = "BOUGHT_MORE"
    HOLDING = "HOLDING"


class SyncStage(str, Enum):
    IDLE = "IDLE"
    FETCH_METADATA_PRICE = "FETCH_METADATA_PRICE"
    FETCH_BALANCES = "FETCH_BALANCES"
    FETCH_TRANSFERS = "FETCH_TRANSFERS"
    DONE = "DONE"
    ERROR = "ERROR"
    CANCELLED = "CANCELLED"


@dataclass(frozen=True)
class WatchedAccount:
    """A wallet the user has chosen to monitor."""
    id: str
    address: str
    display_name: str
    group: Optional[str] = None

    @property
    def key(self) -> str:
        return address_key(self.address)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "address": self.address,
            "display_name": self.display_name,
            "group": self.group,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WatchedAccount":
        address = data["address"].strip()
        return cls(
            id=data.get("id") or address,
            address=address,
            display_name=data.get("display_name") or data.get("name") or "",
            group=data.get("group") or None,
        )


class WatchList:
    """Ordered set of watched accounts, unique by case-normalized address."""

    def __init__(self, accounts: Optional[List[WatchedAccount]] = None):
        self._accounts: List[WatchedAccount] = []
        if accounts:
            self.add(accounts)

    def __iter__(self):
        return iter(self._accounts)

    def __len__(self) -> int:
        return len(self._accounts)

    def __contains__(self, address: str) -> bool:
        return address_key(address) in {a.key for a in self._accounts}

    @property
    def accounts(self) -> List[WatchedAccount]:
        return list(self._accounts)

    def add(self, accounts: List[WatchedAccount]) -> List[WatchedAccount]:
        """Append accounts whose address is not already watched; returns the added ones."""
        seen = {a.key for a in self._accounts}
        added = []
        for account in accounts:
            if account.key in seen:
                continue
            seen.add(account.key)
            self._accounts.append(account)
            added.append(account)
        return added

    def remove(self, account_id: str) -> bool:
        before = len(self._accounts)
        self._accounts = [a for a in self._accounts if a.id != account_id]
        return len(self._accounts) != before

    def replace(self, accounts: List[WatchedAccount]) -> None:
        self._accounts = []
        self.add(accounts)

    def get(self, address: str) -> Optional[WatchedAccount]:
        key = address_key(address)
        for account in self._accounts:
            if account.key == key:
                return account
        return None


@dataclass
class BalanceResult:
    """One account's balance as returned by the gateway."""
    address: str
    raw_amount: int
    decimals: int
    ui_amount: float
    fetched_at: Optional[datetime] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class BalancePoint:
    amount: float
    timestamp: datetime


@dataclass
class BalanceSnapshot:
    """Last known balance of one account, merged on every fetch."""
    address: str
    raw_amount: int
    decimals: int
    ui_amount: float
    first_seen_at: datetime
    last_updated_at: datetime
    previous_ui_amount: Optional[float] = None
    history: List[BalancePoint] = field(default_factory=list)
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "address": self.address,
            "raw_amount": self.raw_amount,
            "decimals": self.decimals,
            "ui_amount": self.ui_amount,
            "previous_ui_amount": self.previous_ui_amount,
            "history": [
                {"amount": p.amount, "timestamp": to_iso(p.timestamp)}
                for p in self.history
            ],
            "first_seen_at": to_iso(self.first_seen_at),
            "last_updated_at": to_iso(self.last_updated_at),
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BalanceSnapshot":
        return cls(
            address=data["address"],
            raw_amount=int(data.get("raw_amount") or 0),
            decimals=int(data.get("decimals", 9)),
            ui_amount=float(data.get("ui_amount") or 0.0),
            previous_ui_amount=data.get("previous_ui_amount"),
            history=[
                BalancePoint(amount=float(p["amount"]), timestamp=from_iso(p["timestamp"]))
                for p in data.get("history", [])
            ],
            first_seen_at=from_iso(data["first_seen_at"]),
            last_updated_at=from_iso(data["last_updated_at"]),
            error=data.get("error"),
        )


@dataclass(frozen=True)
class ClassifiedTransfer:
    """A raw transaction reduced to its effect on one wallet's asset balance."""
    signature_id: str
    timestamp: Optional[datetime]
    wallet_address: str
    category: TransferCategory
    amount: float
    raw_amount: int
    decimals: int
    sol_delta: float
    counterparty_in: Optional[str] = None   # source of an incoming move
    counterparty_out: Optional[str] = None  # destination of an outgoing move

    def to_dict(self) -> Dict[str, Any]:
        return {
            "signature_id": self.signature_id,
            "timestamp": to_iso(self.timestamp) if self.timestamp else None,
            "wallet_address": self.wallet_address,
            "category": self.category.value,
            "amount": self.amount,
            "raw_amount": self.raw_amount,
            "decimals": self.decimals,
            "sol_delta": self.sol_delta,
            "counterparty_in": self.counterparty_in,
            "counterparty_out": self.counterparty_out,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ClassifiedTransfer":
        ts = data.get("timestamp")
        return cls(
            signature_id=data["signature_id"],
            timestamp=from_iso(ts) if ts else None,
            wallet_address=data["wallet_address"],
            category=TransferCategory(data["category"]),
            amount=float(data["amount"]),
            raw_amount=int(data["raw_amount"]),
            decimals=int(data["decimals"]),
            sol_delta=float(data.get("sol_delta") or 0.0),
            counterparty_in=data.get("counterparty_in"),
            counterparty_out=data.get("counterparty_out"),
        )


@dataclass
class AssetMetadata:
    """Display metadata for the tracked mint."""
    name: str
    symbol: str
    image: Optional[str] = None
    decimals: Optional[int] = None
    supply: Optional[str] = None
    cached_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "symbol": self.symbol,
            "image": self.image,
            "decimals": self.decimals,
            "supply": self.supply,
            "cached_at": to_iso(self.cached_at) if self.cached_at else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AssetMetadata":
        cached_at = data.get("cached_at")
        return cls(
            name=data.get("name") or "Unknown Token",
            symbol=data.get("symbol") or "???",
            image=data.get("image"),
            decimals=data.get("decimals"),
            supply=data.get("supply"),
            cached_at=from_iso(cached_at) if cached_at else None,
        )


@dataclass
class PricePoint:
    price: float
    timestamp: datetime


@dataclass
class AssetPrice:
    """Latest price of the tracked mint plus a bounded history for charting."""
    price: float
    price_change_24h: float = 0.0
    market_cap: float = 0.0
    history: List[PricePoint] = field(default_factory=list)
    cached_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "price": self.price,
            "price_change_24h": self.price_change_24h,
            "market_cap": self.market_cap,
            "history": [
                {"price": p.price, "timestamp": to_iso(p.timestamp)}
                for p in self.history
            ],
            "cached_at": to_iso(self.cached_at) if self.cached_at else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AssetPrice":
        cached_at = data.get("cached_at")
        return cls(
            price=float(data.get("price") or 0.0),
            price_change_24h=float(data.get("price_change_24h") or 0.0),
            market_cap=float(data.get("market_cap") or 0.0),
            history=[
                PricePoint(price=float(p["price"]), timestamp=from_iso(p["timestamp"]))
                for p in data.get("history", [])
            ],
            cached_at=from_iso(cached_at) if cached_at else None,
        )


@dataclass
class AssetInfo:
    """Aggregated market view of a mint from the price aggregator."""
    address: str
    name: str = "Unknown Token"
    symbol: str = "???"
    image: Optional[str] = None
    price: float = 0.0
    price_change_24h: float = 0.0
    market_cap: float = 0.0
    fdv: float = 0.0
    liquidity: float = 0.0
    volume_24h: float = 0.0
    pair_address: Optional[str] = None
    dex_id: Optional[str] = None
    url: Optional[str] = None
    source: Optional[str] = None
    error: Optional[str] = None


@dataclass
class MintInfo:
    decimals: int = 9
    supply: str = "0"
    mint_authority: Optional[str] = None
    error: Optional[str] = None


@dataclass
class FetchStats:
    """Counters collected while paging one wallet's history."""
    pages: int = 0
    signatures_checked: int = 0
    details_fetched: int = 0
    details_failed: int = 0
    parse_failures: int = 0
    reached_known_data: bool = False


@dataclass
class BatchProgress:
    """Reported after each group of a batched request completes."""
    completed: int
    total: int
    percent: int


@dataclass
class ProgressEvent:
    stage: SyncStage
    message: str
    progress_percent: int
    detail: str = ""


@dataclass
class WalletRow:
    """One line of the dashboard view for a watched account."""
    account: WatchedAccount
    ui_amount: float = 0.0
    previous_ui_amount: Optional[float] = None
    status: Optional[str] = None  # "pending" | "loading" | None
    queue_position: Optional[int] = None
    estimated_wait: Optional[float] = None
    error: Optional[str] = None


@dataclass
class SyncReport:
    """Outcome of one refresh cycle."""
    stage: SyncStage
    full_fetch: bool
    balances_fetched: int = 0
    balance_errors: int = 0
    transfers_added: int = 0
    transfers_total: int = 0
    detail_failures: int = 0
    parse_failures: int = 0
    skipped_wallets: int = 0
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None


@dataclass
class Settings:
    refresh_interval: int = 30
    helius_api_key: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "refresh_interval": self.refresh_interval,
            "helius_api_key": self.helius_api_key,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Settings":
        return cls(
            refresh_interval=int(data.get("refresh_interval", 30)),
            helius_api_key=data.get("helius_api_key") or "",
        )


@dataclass
class SavedProject:
    """An asset + wallet set, plus a snapshot used for cold-start reloads."""
    id: str
    asset_id: str
    name: str = "Unknown"
    symbol: str = "???"
    image: Optional[str] = None
    market_cap: float = 0.0
    wallets: List[WatchedAccount] = field(default_factory=list)
    cached_balances: Optional[List[Dict[str, Any]]] = None
    cached_transfers: Optional[List[Dict[str, Any]]] = None
    cached_asset_info: Optional[Dict[str, Any]] = None
    created_at: Optional[datetime] = None
    last_scanned: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "asset_id": self.asset_id,
            "name": self.name,
            "symbol": self.symbol,
            "image": self.image,
            "market_cap": self.market_cap,
            "wallets": [w.to_dict() for w in self.wallets],
            "cached_balances": self.cached_balances,
            "cached_transfers": self.cached_transfers,
            "cached_asset_info": self.cached_asset_info,
            "created_at": to_iso(self.created_at) if self.created_at else None,
            "last_scanned": to_iso(self.last_scanned) if self.last_scanned else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SavedProject":
        created_at = data.get("created_at")
        last_scanned = data.get("last_scanned")
        return cls(
            id=data["id"],
            asset_id=data["asset_id"],
            name=data.get("name") or "Unknown",
            symbol=data.get("symbol") or "???",
            image=data.get("image"),
            market_cap=float(data.get("market_cap") or 0.0),
            wallets=[WatchedAccount.from_dict(w) for w in data.get("wallets", [])],
            cached_balances=data.get("cached_balances"),
            cached_transfers=data.get("cached_transfers"),
            cached_asset_info=data.get("cached_asset_info"),
            created_at=from_iso(created_at) if created_at else None,
            last_scanned=from_iso(last_scanned) if last_scanned else None,
        )
