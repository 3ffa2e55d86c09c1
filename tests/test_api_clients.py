from unittest.mock import MagicMock

import pytest
import requests

from solana_wallet_tracker.api_clients import DexScreenerClient, SolanaRpcClient
from solana_wallet_tracker.config import Config
from solana_wallet_tracker.errors import RateLimited, RemoteUnavailable

from conftest import MINT, WALLET_A


def response(status=200, payload=None):
    mock = MagicMock()
    mock.status_code = status
    mock.json.return_value = payload if payload is not None else {}
    if status >= 400:
        mock.raise_for_status.side_effect = requests.HTTPError(f"{status} error")
    return mock


def rpc_client(*responses, urls=("https://one.invalid", "https://two.invalid"), label="public"):
    session = MagicMock()
    session.post.side_effect = list(responses)
    return SolanaRpcClient(list(urls), session=session, label=label), session


class TestSolanaRpcClient:
    def test_returns_result_member(self):
        client, session = rpc_client(response(payload={"result": {"value": [{"pubkey": "x"}]}}))

        assert client.get_token_accounts_by_owner(WALLET_A, MINT) == [{"pubkey": "x"}]
        payload = session.post.call_args.kwargs["json"]
        assert payload["method"] == "getTokenAccountsByOwner"
        assert payload["params"][1] == {"mint": MINT}

    def test_http_429_is_rate_limited(self):
        client, _ = rpc_client(response(status=429))
        with pytest.raises(RateLimited):
            client.get_transaction("sig")

    def test_rpc_error_object(self):
        client, _ = rpc_client(response(payload={"error": {"code": -32602, "message": "Invalid param"}}))
        with pytest.raises(RemoteUnavailable):
            client.get_signatures_for_address(WALLET_A)

    def test_rate_limit_message_in_error_object(self):
        client, _ = rpc_client(response(payload={"error": {"message": "Too many requests for a specific RPC call"}}))
        with pytest.raises(RateLimited):
            client.get_signatures_for_address(WALLET_A)

    def test_network_failure_rotates_to_fallback(self):
        client, session = rpc_client(
            requests.ConnectionError("down"),
            response(payload={"result": []}),
        )

        with pytest.raises(RemoteUnavailable):
            client.get_signatures_for_address(WALLET_A)
        assert client.current_url == "https://two.invalid"

        assert client.get_signatures_for_address(WALLET_A) == []
        assert session.post.call_args.args[0] == "https://two.invalid"

    def test_before_cursor_is_sent(self):
        client, session = rpc_client(response(payload={"result": []}))

        client.get_signatures_for_address(WALLET_A, limit=50, before="sig9")

        params = session.post.call_args.kwargs["json"]["params"]
        assert params == [WALLET_A, {"limit": 50, "before": "sig9"}]

    def test_asset_listing_needs_privileged_endpoint(self):
        client, session = rpc_client()
        with pytest.raises(RemoteUnavailable):
            client.get_assets_by_owner(WALLET_A)
        session.post.assert_not_called()

    def test_asset_listing_on_helius(self):
        client, _ = rpc_client(response(payload={"result": {"items": [{"id": MINT}]}}),
                               urls=("https://helius.invalid",), label="helius")
        assert client.get_assets_by_owner(WALLET_A) == [{"id": MINT}]

    def test_from_config_prefers_helius_with_key(self):
        keyed = SolanaRpcClient.from_config(Config(helius_api_key="abc"))
        assert keyed.is_privileged
        assert "abc" in keyed.current_url

        public = SolanaRpcClient.from_config(Config(helius_api_key=None, public_rpc_urls=["https://rpc.invalid"]))
        assert not public.is_privileged
        assert public.urls == ["https://rpc.invalid"]

    def test_requires_a_url(self):
        with pytest.raises(ValueError):
            SolanaRpcClient([])


class TestDexScreenerClient:
    def _client(self, *responses):
        session = MagicMock()
        session.get.side_effect = list(responses)
        return DexScreenerClient(Config(), session=session), session

    def test_best_pair_by_liquidity(self):
        client, session = self._client(response(payload={"pairs": [
            {"pairAddress": "small", "liquidity": {"usd": 1_000}},
            {"pairAddress": "big", "liquidity": {"usd": 90_000}},
            {"pairAddress": "none"},
        ]}))

        assert client.get_best_pair(MINT)["pairAddress"] == "big"
        assert session.get.call_args.args[0].endswith(f"/latest/dex/tokens/{MINT}")

    def test_no_pairs(self):
        client, _ = self._client(response(payload={"pairs": None}))
        assert client.get_best_pair(MINT) is None

    def test_rate_limited(self):
        client, _ = self._client(response(status=429))
        with pytest.raises(RateLimited):
            client.get_token_pairs(MINT)

    def test_server_error(self):
        client, _ = self._client(response(status=503))
        with pytest.raises(RemoteUnavailable):
            client.get_token_pairs(MINT)
