from datetime import timedelta

import pytest

from solana_wallet_tracker.cache import (
    SCHEMA_VERSION, JsonFileBackend, MemoryBackend, SyncCache, is_stale,
)
from solana_wallet_tracker.models import (
    AssetMetadata, AssetPrice, BalanceResult, ClassifiedTransfer, TransferCategory,
    WatchedAccount,
)

from conftest import MINT, WALLET_A, WALLET_B, WALLET_C, FakeClock, make_address


def balance(address, ui_amount, error=None):
    raw = int(ui_amount * 10 ** 6)
    return BalanceResult(address=address, raw_amount=raw, decimals=6,
                         ui_amount=ui_amount, error=error)


def transfer(signature, clock, minutes_ago=0, wallet=WALLET_A,
             category=TransferCategory.ACQUIRE, amount=10.0):
    return ClassifiedTransfer(
        signature_id=signature,
        timestamp=clock.now - timedelta(minutes=minutes_ago),
        wallet_address=wallet,
        category=category,
        amount=amount,
        raw_amount=int(amount * 10 ** 6),
        decimals=6,
        sol_delta=-0.1,
    )


class TestBalances:
    def test_merge_tracks_previous_amount_and_history(self, cache, clock):
        cache.merge_balances(MINT, [balance(WALLET_A, 100.0)])
        first_seen = clock.now
        clock.advance(minutes=1)
        cache.merge_balances(MINT, [balance(WALLET_A, 80.0)])

        snapshot = cache.get_balances(MINT).by_address()[WALLET_A.lower()]
        assert snapshot.ui_amount == 80.0
        assert snapshot.previous_ui_amount == 100.0
        assert [p.amount for p in snapshot.history] == [100.0, 80.0]
        assert snapshot.first_seen_at == first_seen
        assert snapshot.last_updated_at == clock.now

    def test_history_keeps_last_ten(self, cache):
        for i in range(15):
            cache.merge_balances(MINT, [balance(WALLET_A, float(i))])

        snapshot = cache.get_balances(MINT).snapshots[0]
        assert len(snapshot.history) == 10
        assert snapshot.history[0].amount == 5.0
        assert snapshot.history[-1].amount == 14.0

    def test_merge_leaves_other_accounts_alone(self, cache):
        cache.merge_balances(MINT, [balance(WALLET_A, 1.0), balance(WALLET_B, 2.0)])
        cache.merge_balances(MINT, [balance(WALLET_A, 3.0)])

        by_address = cache.get_balances(MINT).by_address()
        assert by_address[WALLET_A.lower()].ui_amount == 3.0
        assert by_address[WALLET_B.lower()].ui_amount == 2.0
        assert by_address[WALLET_B.lower()].previous_ui_amount is None

    def test_error_does_not_overwrite_good_amount(self, cache):
        cache.merge_balances(MINT, [balance(WALLET_A, 50.0)])
        cache.merge_balances(MINT, [balance(WALLET_A, 0.0, error="rate limited")])

        snapshot = cache.get_balances(MINT).snapshots[0]
        assert snapshot.ui_amount == 50.0
        assert snapshot.error == "rate limited"
        assert len(snapshot.history) == 1

    def test_stale_accounts(self, cache, clock):
        accounts = [
            WatchedAccount(id="a", address=WALLET_A, display_name="A"),
            WatchedAccount(id="b", address=WALLET_B, display_name="B"),
            WatchedAccount(id="c", address=WALLET_C, display_name="C"),
        ]
        cache.merge_balances(MINT, [balance(WALLET_A, 1.0)])
        clock.advance(minutes=3)
        cache.merge_balances(MINT, [balance(WALLET_B, 1.0)])

        stale = cache.get_stale_accounts(MINT, accounts)

        assert [a.id for a in stale] == ["a", "c"]
        assert cache.get_stale_accounts(MINT, accounts, max_age=timedelta(minutes=5))[0].id == "c"

    def test_errored_entry_is_always_stale(self, cache):
        account = WatchedAccount(id="a", address=WALLET_A, display_name="A")
        cache.merge_balances(MINT, [balance(WALLET_A, 0.0, error="boom")])
        assert cache.get_stale_accounts(MINT, [account]) == [account]


class TestTransfers:
    def test_merge_is_idempotent(self, cache, clock):
        batch = [transfer("s1", clock, 10), transfer("s2", clock, 5)]

        first = cache.merge_transfers(MINT, batch)
        second = cache.merge_transfers(MINT, batch)

        assert (first.added_count, first.total_count) == (2, 2)
        assert (second.added_count, second.total_count) == (0, 2)

    def test_sorted_newest_first(self, cache, clock):
        cache.merge_transfers(MINT, [transfer("old", clock, 60)])
        cache.merge_transfers(MINT, [transfer("new", clock, 1), transfer("mid", clock, 30)])

        view = cache.get_transfers(MINT)
        assert [t.signature_id for t in view.transfers] == ["new", "mid", "old"]
        assert view.newest_id == "new"
        assert view.oldest_id == "old"
        assert cache.newest_transfer_time(MINT) == clock.now - timedelta(minutes=1)
        assert cache.known_transfer_ids(MINT) == {"new", "mid", "old"}

    def test_transfers_without_timestamp_sort_last(self, cache, clock):
        undated = ClassifiedTransfer(
            signature_id="undated", timestamp=None, wallet_address=WALLET_A,
            category=TransferCategory.TRANSFER_IN, amount=1.0, raw_amount=10 ** 6,
            decimals=6, sol_delta=0.0)
        cache.merge_transfers(MINT, [undated, transfer("dated", clock, 5)])

        assert [t.signature_id for t in cache.get_transfers(MINT).transfers] == ["dated", "undated"]


class TestMetadataAndPrice:
    def test_metadata_merge_keeps_known_fields(self, cache):
        cache.merge_metadata(MINT, AssetMetadata(name="Test", symbol="TEST", image="img.png"))
        cache.merge_metadata(MINT, AssetMetadata(name="Test", symbol="TEST", decimals=6))

        metadata = cache.get_metadata(MINT).metadata
        assert metadata.image == "img.png"
        assert metadata.decimals == 6

    def test_price_history_is_capped(self, cache):
        for i in range(105):
            cache.merge_price(MINT, AssetPrice(price=float(i)))

        price = cache.get_price(MINT).price
        assert price.price == 104.0
        assert len(price.history) == 100
        assert price.history[0].price == 5.0


class TestStaleness:
    def test_is_stale_without_sync(self, clock):
        assert is_stale(None, timedelta(minutes=1), clock.now)

    @pytest.mark.parametrize("getter,merge,ttl", [
        ("get_balances", lambda c: c.merge_balances(MINT, [balance(WALLET_A, 1.0)]), timedelta(minutes=2)),
        ("get_transfers", lambda c: c.merge_transfers(MINT, []), timedelta(seconds=30)),
        ("get_metadata", lambda c: c.merge_metadata(MINT, AssetMetadata(name="T", symbol="T")), timedelta(hours=24)),
        ("get_price", lambda c: c.merge_price(MINT, AssetPrice(price=1.0)), timedelta(minutes=1)),
    ])
    def test_each_store_goes_stale_after_its_ttl(self, cache, clock, getter, merge, ttl):
        assert getattr(cache, getter)(MINT).is_stale

        merge(cache)
        assert not getattr(cache, getter)(MINT).is_stale

        clock.advance(seconds=ttl.total_seconds())
        assert not getattr(cache, getter)(MINT).is_stale

        clock.advance(seconds=1)
        assert getattr(cache, getter)(MINT).is_stale

    def test_sync_needs(self, cache, clock):
        accounts = [
            WatchedAccount(id="a", address=WALLET_A, display_name="A"),
            WatchedAccount(id="b", address=WALLET_B, display_name="B"),
        ]
        cache.merge_balances(MINT, [balance(WALLET_A, 1.0)])
        cache.merge_metadata(MINT, AssetMetadata(name="T", symbol="T"))

        needs = cache.get_sync_needs(MINT, accounts)

        assert not needs.needs_metadata
        assert needs.needs_price
        assert needs.needs_balances
        assert [a.id for a in needs.stale_accounts] == ["b"]
        assert [a.id for a in needs.fresh_accounts] == ["a"]
        assert needs.needs_transfers


class TestMaintenance:
    def test_clear_asset_removes_every_store(self, cache, clock):
        other = make_address("OtherMint")
        for asset in (MINT, other):
            cache.merge_balances(asset, [balance(WALLET_A, 1.0)])
            cache.merge_transfers(asset, [transfer("s1", clock)])
            cache.merge_metadata(asset, AssetMetadata(name="T", symbol="T"))
            cache.merge_price(asset, AssetPrice(price=1.0))

        cache.clear_asset(MINT)

        assert not cache.get_instant_load_data(MINT).has_data
        assert cache.get_sync_state(MINT) == {}
        assert cache.get_instant_load_data(other).has_data

    def test_merge_into_one_asset_leaves_another_untouched(self, cache, clock):
        other = make_address("OtherMint")
        cache.merge_balances(other, [balance(WALLET_A, 7.0), balance(WALLET_B, 3.0)])
        cache.merge_transfers(other, [transfer("b1", clock), transfer("b2", clock, minutes_ago=5)])
        balances_before = cache.get_balances(other).snapshots
        transfers_before = cache.get_transfers(other).transfers
        sync_before = cache.get_sync_state(other)

        clock.advance(minutes=3)
        cache.merge_balances(MINT, [balance(WALLET_A, 1.0), balance(WALLET_C, 2.0)])
        cache.merge_transfers(MINT, [transfer("a1", clock), transfer("b1", clock)])
        cache.merge_metadata(MINT, AssetMetadata(name="T", symbol="T"))
        cache.merge_price(MINT, AssetPrice(price=1.0))

        assert cache.get_balances(other).snapshots == balances_before
        assert cache.get_transfers(other).transfers == transfers_before
        assert cache.get_sync_state(other) == sync_before
        assert cache.known_transfer_ids(MINT) == {"a1", "b1"}

    def test_instant_load_data(self, cache, clock):
        cache.merge_balances(MINT, [balance(WALLET_A, 1.0)])
        cache.merge_metadata(MINT, AssetMetadata(name="Test", symbol="TEST"))
        cache.merge_price(MINT, AssetPrice(price=0.5, market_cap=1000.0))

        data = cache.get_instant_load_data(MINT)

        assert data.has_data
        assert data.asset_info["symbol"] == "TEST"
        assert data.asset_info["price"] == 0.5
        assert data.last_sync["balances"] == clock.now
        assert data.staleness["transfers"]

    def test_stats_and_clear_all(self, cache, clock):
        cache.merge_balances(MINT, [balance(WALLET_A, 1.0), balance(WALLET_B, 1.0)])
        cache.merge_transfers(MINT, [transfer("s1", clock)])

        stats = cache.stats()
        assert stats.asset_count == 1
        assert stats.total_wallets == 2
        assert stats.total_transfers == 1
        assert stats.storage_bytes > 0

        cache.clear_all()
        assert cache.stats().asset_count == 0


class TestSchema:
    def test_records_carry_schema_version(self, clock):
        backend = MemoryBackend()
        cache = SyncCache(backend, clock=clock)
        cache.merge_balances(MINT, [balance(WALLET_A, 1.0)])

        assert backend.get(f"balances/{MINT}")["schema_version"] == SCHEMA_VERSION

    def test_newer_schema_is_ignored(self, clock):
        backend = MemoryBackend()
        backend.put(f"balances/{MINT}", {"schema_version": SCHEMA_VERSION + 1, "wallets": []})

        view = SyncCache(backend, clock=clock).get_balances(MINT)

        assert not view.has_data
        assert view.is_stale

    def test_legacy_record_is_migrated(self, clock):
        backend = MemoryBackend()
        backend.put(f"transfers/{MINT}", {
            "transfers": [transfer("legacy", clock).to_dict()],
            "last_sync": clock.now.isoformat(),
        })

        view = SyncCache(backend, clock=clock).get_transfers(MINT)

        assert view.newest_id == "legacy"


class TestJsonFileBackend:
    def test_survives_a_restart(self, tmp_path):
        clock = FakeClock()
        SyncCache(JsonFileBackend(str(tmp_path)), clock=clock).merge_balances(
            MINT, [balance(WALLET_A, 7.0)])

        reopened = SyncCache(JsonFileBackend(str(tmp_path)), clock=clock)

        assert reopened.get_balances(MINT).snapshots[0].ui_amount == 7.0
        assert (tmp_path / "balances" / f"{MINT}.json").exists()
        assert not list(tmp_path.rglob("*.tmp"))

    def test_keys_and_delete(self, tmp_path):
        backend = JsonFileBackend(str(tmp_path))
        backend.put("price/abc", {"price": 1})

        assert backend.keys() == ["price/abc"]
        backend.delete("price/abc")
        backend.delete("price/abc")
        assert backend.get("price/abc") is None
