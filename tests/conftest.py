import pytest
from datetime import datetime, timedelta, timezone

from solana_wallet_tracker.cache import MemoryBackend, SyncCache
from solana_wallet_tracker.config import Config
from solana_wallet_tracker.errors import RemoteUnavailable
from solana_wallet_tracker.gateway import LedgerGateway
from solana_wallet_tracker.models import WatchedAccount
from solana_wallet_tracker.orchestrator import SyncOrchestrator
from solana_wallet_tracker.storage import Storage


def make_address(tag):
    """Pad a base58-safe tag to a 43 character address."""
    return (tag + "1" * 43)[:43]


MINT = make_address("Mint")
POOL = make_address("PooLAcct")
WALLET_A = make_address("WaLLetA")
WALLET_B = make_address("WaLLetB")
WALLET_C = make_address("WaLLetC")

DECIMALS = 6
BASE_TOKENS = 1_000 * 10 ** DECIMALS
BASE_LAMPORTS = 10 * 10 ** 9


def make_tx(signature, wallet, mint, token_change, sol_change,
            counterparty=POOL, block_time=None, decimals=DECIMALS):
    """Build a jsonParsed getTransaction result for one token movement.

    `token_change` is in raw units and `sol_change` in SOL, both from the
    wallet's point of view; the counterparty gets the opposite token move.
    """
    lamports = round(sol_change * 10 ** 9)

    def token_entry(owner, amount):
        return {
            "mint": mint,
            "owner": owner,
            "uiTokenAmount": {"amount": str(amount), "decimals": decimals},
        }

    return {
        "blockTime": block_time,
        "transaction": {
            "signatures": [signature],
            "message": {
                "accountKeys": [
                    {"pubkey": wallet, "signer": True},
                    {"pubkey": counterparty, "signer": False},
                ],
            },
        },
        "meta": {
            "preBalances": [BASE_LAMPORTS, BASE_LAMPORTS],
            "postBalances": [BASE_LAMPORTS + lamports, BASE_LAMPORTS - lamports],
            "preTokenBalances": [
                token_entry(wallet, BASE_TOKENS),
                token_entry(counterparty, BASE_TOKENS),
            ],
            "postTokenBalances": [
                token_entry(wallet, BASE_TOKENS + token_change),
                token_entry(counterparty, BASE_TOKENS - token_change),
            ],
        },
    }


class FakeRpc:
    """In-memory stand-in for SolanaRpcClient."""

    def __init__(self, privileged=False):
        self.is_privileged = privileged
        self.balances = {}
        self.signatures = {}
        self.transactions = {}
        self.failing = set()
        self.failing_transactions = set()
        self.other_assets = {}
        self.balance_calls = []
        self.signature_calls = []
        self.transaction_calls = []
        self.mint_account = {
            "data": {"parsed": {"info": {"decimals": DECIMALS, "supply": "1000000000000"}}},
        }

    def set_balance(self, owner, raw_amount, decimals=DECIMALS):
        self.balances[owner] = (raw_amount, decimals)

    def add_transaction(self, wallet, tx):
        """Register a transaction as the newest one for `wallet`."""
        signature = tx["transaction"]["signatures"][0]
        self.transactions[signature] = tx
        self.signatures.setdefault(wallet, []).insert(
            0, {"signature": signature, "blockTime": tx["blockTime"]})

    def get_token_accounts_by_owner(self, owner, mint):
        self.balance_calls.append(owner)
        if owner in self.failing:
            raise RemoteUnavailable("node is down")
        if owner not in self.balances:
            return []
        raw, decimals = self.balances[owner]
        return [{
            "account": {"data": {"parsed": {"info": {
                "tokenAmount": {"amount": str(raw), "decimals": decimals},
            }}}},
        }]

    def get_assets_by_owner(self, owner, page=1, limit=100):
        """Pages over `other_assets[owner]` followed by the tracked mint."""
        self.balance_calls.append(owner)
        assets = list(self.other_assets.get(owner, []))
        if owner in self.balances:
            raw, decimals = self.balances[owner]
            assets.append({"id": MINT, "token_info": {"balance": raw, "decimals": decimals}})
        start = (page - 1) * limit
        return assets[start:start + limit]

    def get_signatures_for_address(self, address, limit=100, before=None):
        self.signature_calls.append((address, before))
        if address in self.failing:
            raise RemoteUnavailable("node is down")
        signatures = self.signatures.get(address, [])
        start = 0
        if before:
            ids = [s["signature"] for s in signatures]
            start = ids.index(before) + 1
        return signatures[start:start + limit]

    def get_transaction(self, signature):
        self.transaction_calls.append(signature)
        if signature in self.failing_transactions:
            raise RemoteUnavailable("transaction lookup failed")
        return self.transactions.get(signature)

    def get_account_info(self, address):
        return self.mint_account


class FakeMarket:
    """In-memory stand-in for DexScreenerClient."""

    def __init__(self):
        self.calls = 0
        self.pair = {
            "baseToken": {"name": "Test Token", "symbol": "TEST"},
            "priceUsd": "0.0025",
            "priceChange": {"h24": 12.5},
            "marketCap": 2_500_000,
            "fdv": 2_600_000,
            "liquidity": {"usd": 150_000},
            "volume": {"h24": 40_000},
            "pairAddress": make_address("Pair"),
            "dexId": "raydium",
            "info": {"imageUrl": "https://example.com/test.png"},
        }

    def get_best_pair(self, mint):
        self.calls += 1
        return self.pair


class RecordingSleep:
    """Records requested delays instead of sleeping."""

    def __init__(self):
        self.calls = []

    def __call__(self, seconds):
        self.calls.append(seconds)


class FakeClock:
    """Controllable wall clock returning timezone-aware datetimes."""

    def __init__(self, start=None):
        self.now = start or datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def config():
    return Config(helius_api_key=None, public_rpc_urls=["https://rpc.invalid"])


@pytest.fixture
def fake_rpc():
    return FakeRpc()


@pytest.fixture
def fake_market():
    return FakeMarket()


@pytest.fixture
def recording_sleep():
    return RecordingSleep()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def gateway(fake_rpc, fake_market, config, recording_sleep):
    return LedgerGateway(fake_rpc, fake_market, config, sleep=recording_sleep)


@pytest.fixture
def cache(clock):
    return SyncCache(MemoryBackend(), clock=clock)


@pytest.fixture
def accounts():
    return [
        WatchedAccount(id="a", address=WALLET_A, display_name="Alpha"),
        WatchedAccount(id="b", address=WALLET_B, display_name="Bravo"),
    ]


@pytest.fixture
def orchestrator(gateway, config):
    """Orchestrator over fakes with a real-time cache so block times line up."""
    return SyncOrchestrator(gateway, SyncCache(MemoryBackend()), storage=Storage(), config=config)
