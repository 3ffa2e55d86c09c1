import itertools
import logging
from typing import Optional, List, Dict, Any

import requests

from .config import Config
from .errors import RemoteUnavailable, RateLimited

# Set up logging
logger = logging.getLogger(__name__)

_request_ids = itertools.count(1)


def _looks_rate_limited(message: str) -> bool:
    lowered = (message or "").lower()
    return "429" in lowered or "rate limit" in lowered or "too many requests" in lowered


class SolanaRpcClient:
    """Client for a Solana JSON-RPC endpoint, with fallback URL rotation."""

    def __init__(self, urls: List[str], timeout: float = 30.0,
                 session: Optional[requests.Session] = None, label: str = "public"):
        if not urls:
            raise ValueError("At least one RPC URL is required")
        self.urls = list(urls)
        self.timeout = timeout
        self.session = session or requests.Session()
        self.label = label
        self._url_index = 0

    @classmethod
    def from_config(cls, config: Config,
                    session: Optional[requests.Session] = None) -> "SolanaRpcClient":
        """Use the Helius endpoint when a key is configured, public RPCs otherwise."""
        if config.has_credential:
            logger.info("Using Helius RPC with API key")
            return cls([config.helius_rpc_url], timeout=config.request_timeout,
                       session=session, label="helius")

        logger.warning(
            "No Helius API key - using public RPCs, which are heavily rate limited")
        return cls(config.public_rpc_urls, timeout=config.request_timeout,
                   session=session, label="public")

    @property
    def is_privileged(self) -> bool:
        return self.label == "helius"

    @property
    def current_url(self) -> str:
        return self.urls[self._url_index % len(self.urls)]

    def _rotate(self) -> None:
        if len(self.urls) > 1:
            self._url_index = (self._url_index + 1) % len(self.urls)
            logger.info(f"Switching {self.label} RPC to fallback #{self._url_index}")

    def _make_request(self, method: str, params: Any) -> Any:
        """Make a JSON-RPC call and return its `result` member."""
        payload = {
            "jsonrpc": "2.0",
            "id": next(_request_ids),
            "method": method,
            "params": params,
        }

        try:
            response = self.session.post(
                self.current_url, json=payload, timeout=self.timeout)
        except requests.RequestException as e:
            self._rotate()
            raise RemoteUnavailable(f"{method} failed: {e}") from e

        if response.status_code == 429:
            raise RateLimited(f"{method} rate limited by {self.label} RPC")

        try:
            response.raise_for_status()
            data = response.json()
        except (requests.RequestException, ValueError) as e:
            self._rotate()
            raise RemoteUnavailable(f"{method} failed: {e}") from e

        error = data.get("error")
        if error:
            message = error.get("message", "Unknown error") if isinstance(error, dict) else str(error)
            if _looks_rate_limited(message):
                raise RateLimited(f"{method} rate limited: {message}")
            raise RemoteUnavailable(f"RPC error from {method}: {message}")

        return data.get("result")

    def get_token_accounts_by_owner(self, owner: str, mint: str) -> List[Dict[str, Any]]:
        """Get parsed token accounts that `owner` holds for `mint`."""
        result = self._make_request(
            "getTokenAccountsByOwner",
            [owner, {"mint": mint}, {"encoding": "jsonParsed"}],
        )
        return (result or {}).get("value", [])

    def get_signatures_for_address(self, address: str, limit: int = 100,
                                   before: Optional[str] = None) -> List[Dict[str, Any]]:
        """Get transaction signatures for an address, newest first."""
        options: Dict[str, Any] = {"limit": limit}
        if before:
            options["before"] = before
        return self._make_request("getSignaturesForAddress", [address, options]) or []

    def get_transaction(self, signature: str) -> Optional[Dict[str, Any]]:
        """Get a parsed transaction by signature."""
        return self._make_request(
            "getTransaction",
            [signature, {"encoding": "jsonParsed",
                         "maxSupportedTransactionVersion": 0,
                         "commitment": "confirmed"}],
        )

    def get_account_info(self, address: str) -> Optional[Dict[str, Any]]:
        result = self._make_request(
            "getAccountInfo", [address, {"encoding": "jsonParsed"}])
        return (result or {}).get("value")

    def get_assets_by_owner(self, owner: str, page: int = 1,
                            limit: int = 100) -> List[Dict[str, Any]]:
        """Helius DAS call listing fungible assets held by `owner`."""
        if not self.is_privileged:
            raise RemoteUnavailable("getAssetsByOwner requires the Helius endpoint")
        result = self._make_request("getAssetsByOwner", {
            "ownerAddress": owner,
            "page": page,
            "limit": limit,
            "displayOptions": {"showFungible": True},
        })
        return (result or {}).get("items", [])


class DexScreenerClient:
    """Client for the DexScreener API (free, no auth required)."""

    def __init__(self, config: Config, session: Optional[requests.Session] = None):
        self.config = config
        self.base_url = config.dexscreener_base_url.rstrip("/")
        self.session = session or requests.Session()

    def _make_request(self, endpoint: str) -> Dict[str, Any]:
        """Make a request to the DexScreener API."""
        url = f"{self.base_url}/{endpoint}"

        try:
            response = self.session.get(url, timeout=self.config.request_timeout)
        except requests.RequestException as e:
            raise RemoteUnavailable(f"DexScreener request failed: {e}") from e

        if response.status_code == 429:
            raise RateLimited("DexScreener rate limited")

        try:
            response.raise_for_status()
            return response.json() or {}
        except (requests.RequestException, ValueError) as e:
            raise RemoteUnavailable(f"DexScreener request failed: {e}") from e

    def get_token_pairs(self, mint: str) -> List[Dict[str, Any]]:
        data = self._make_request(f"latest/dex/tokens/{mint}")
        return data.get("pairs") or []

    def get_best_pair(self, mint: str) -> Optional[Dict[str, Any]]:
        """Return the trading pair with the highest USD liquidity, if any."""
        pairs = self.get_token_pairs(mint)
        if not pairs:
            return None

        def liquidity_usd(pair: Dict[str, Any]) -> float:
            return float((pair.get("liquidity") or {}).get("usd") or 0.0)

        return max(pairs, key=liquidity_usd)
