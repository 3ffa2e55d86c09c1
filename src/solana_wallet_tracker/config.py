import os
from dataclasses import dataclass, field
from typing import List, Optional
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


DEFAULT_PUBLIC_RPCS = [
    "https://api.mainnet-beta.solana.com",
    "https://rpc.ankr.com/solana",
    "https://solana-mainnet.g.alchemy.com/v2/demo",
]


@dataclass
class ClassifierPolicy:
    """Native-currency thresholds used to tell swaps from plain transfers."""

    # SOL gained above this on an outgoing token move means a sale
    dispose_min_native_gain: float = 0.001
    # SOL spent above this on an incoming token move means a purchase
    acquire_min_native_cost: float = 0.01


@dataclass
class StatusPolicy:
    """Time windows and ratios for the activity status."""

    selling_window_seconds: int = 15 * 60
    recent_window_seconds: int = 24 * 60 * 60
    significant_sell_ratio: float = 0.05


@dataclass
class BatchPolicy:
    """Group size and inter-group delay for one kind of batched request."""

    group_size: int
    group_delay: float


@dataclass
class Config:
    """Application configuration."""

    # API Keys
    helius_api_key: Optional[str] = None

    # API URLs
    public_rpc_urls: List[str] = field(
        default_factory=lambda: list(DEFAULT_PUBLIC_RPCS))
    helius_rpc_template: str = "https://mainnet.helius-rpc.com/?api-key={key}"
    dexscreener_base_url: str = "https://api.dexscreener.com"
    request_timeout: float = 30.0

    # Rate limiting (balances)
    balance_group_size: int = 3
    balance_group_delay: float = 2.0
    balance_group_size_keyed: int = 5
    balance_group_delay_keyed: float = 0.5

    # Rate limiting (transaction history)
    tx_group_size: int = 2
    tx_group_delay: float = 2.5
    tx_group_size_keyed: int = 3
    tx_group_delay_keyed: float = 1.0
    detail_batch_size: int = 15
    signatures_per_page: int = 100

    # Refresh settings
    refresh_interval: int = 30  # seconds, 0 disables polling
    debounce_seconds: float = 0.3
    data_dir: str = ".sol-tracker"

    classifier: ClassifierPolicy = field(default_factory=ClassifierPolicy)
    status: StatusPolicy = field(default_factory=StatusPolicy)

    @property
    def has_credential(self) -> bool:
        return bool(self.helius_api_key and self.helius_api_key.strip())

    @property
    def helius_rpc_url(self) -> Optional[str]:
        if not self.has_credential:
            return None
        return self.helius_rpc_template.format(key=self.helius_api_key.strip())

    def balance_policy(self) -> BatchPolicy:
        """Larger groups and shorter pauses when a privileged key is present."""
        if self.has_credential:
            return BatchPolicy(self.balance_group_size_keyed, self.balance_group_delay_keyed)
        return BatchPolicy(self.balance_group_size, self.balance_group_delay)

    def transfer_policy(self) -> BatchPolicy:
        if self.has_credential:
            return BatchPolicy(self.tx_group_size_keyed, self.tx_group_delay_keyed)
        return BatchPolicy(self.tx_group_size, self.tx_group_delay)

    @classmethod
    def from_env(cls) -> "Config":
        """Create config from environment variables."""
        rpc_urls = [
            url.strip() for url in os.getenv("SOLANA_RPC_URLS", "").split(",")
            if url.strip()
        ]

        return cls(
            helius_api_key=os.getenv("HELIUS_API_KEY") or None,
            public_rpc_urls=rpc_urls or list(DEFAULT_PUBLIC_RPCS),
            dexscreener_base_url=os.getenv(
                "DEXSCREENER_BASE_URL", "https://api.dexscreener.com"),
            request_timeout=float(os.getenv("REQUEST_TIMEOUT", "30")),
            balance_group_size=int(os.getenv("BALANCE_GROUP_SIZE", "3")),
            balance_group_delay=float(os.getenv("BALANCE_GROUP_DELAY", "2.0")),
            balance_group_size_keyed=int(
                os.getenv("BALANCE_GROUP_SIZE_KEYED", "5")),
            balance_group_delay_keyed=float(
                os.getenv("BALANCE_GROUP_DELAY_KEYED", "0.5")),
            tx_group_size=int(os.getenv("TX_GROUP_SIZE", "2")),
            tx_group_delay=float(os.getenv("TX_GROUP_DELAY", "2.5")),
            tx_group_size_keyed=int(os.getenv("TX_GROUP_SIZE_KEYED", "3")),
            tx_group_delay_keyed=float(os.getenv("TX_GROUP_DELAY_KEYED", "1.0")),
            refresh_interval=int(os.getenv("REFRESH_INTERVAL", "30")),
            data_dir=os.getenv("TRACKER_DATA_DIR", ".sol-tracker"),
            classifier=ClassifierPolicy(
                dispose_min_native_gain=float(
                    os.getenv("DISPOSE_SOL_THRESHOLD", "0.001")),
                acquire_min_native_cost=float(
                    os.getenv("ACQUIRE_SOL_THRESHOLD", "0.01")),
            ),
            status=StatusPolicy(
                significant_sell_ratio=float(
                    os.getenv("SIGNIFICANT_SELL_RATIO", "0.05")),
            ),
        )
