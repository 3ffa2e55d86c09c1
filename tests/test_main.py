import pytest
from typer.testing import CliRunner

from solana_wallet_tracker.config import Config
from solana_wallet_tracker.main import app, build_dashboard, build_orchestrator, parse_wallet
from solana_wallet_tracker.models import SyncStage

from conftest import MINT, WALLET_A

runner = CliRunner()


@pytest.fixture
def workdir(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("HELIUS_API_KEY", raising=False)
    monkeypatch.delenv("REFRESH_INTERVAL", raising=False)
    monkeypatch.setenv("TRACKER_DATA_DIR", str(tmp_path / "data"))
    return tmp_path


class TestCommands:
    def test_setup_writes_env_template(self, workdir):
        result = runner.invoke(app, ["setup"])

        assert result.exit_code == 0
        content = (workdir / ".env").read_text()
        assert "HELIUS_API_KEY" in content
        assert "SIGNIFICANT_SELL_RATIO=0.05" in content

    def test_track_rejects_invalid_mint(self, workdir):
        result = runner.invoke(app, ["track", "not-a-mint", "--wallet", WALLET_A])

        assert result.exit_code == 1
        assert "Invalid token mint" in result.output

    def test_empty_project_list(self, workdir):
        result = runner.invoke(app, ["projects", "list"])

        assert result.exit_code == 0
        assert "No saved projects" in result.output

    def test_cache_stats_on_empty_cache(self, workdir):
        result = runner.invoke(app, ["cache", "stats"])

        assert result.exit_code == 0
        assert "Tokens cached: 0" in result.output

    def test_watch_needs_a_session(self, workdir):
        result = runner.invoke(app, ["watch"])
        assert result.exit_code == 1

    def test_settings_are_saved_and_shown(self, workdir):
        result = runner.invoke(app, ["settings", "--helius-key", " secret ", "--interval", "90"])

        assert result.exit_code == 0
        assert "Settings saved" in result.output
        assert "90s" in result.output

        shown = runner.invoke(app, ["settings"])
        assert "Settings saved" not in shown.output
        assert "Helius API key: set" in shown.output

    def test_saved_settings_fill_unset_config(self, workdir):
        runner.invoke(app, ["settings", "--helius-key", "secret", "--interval", "90"])

        config = Config.from_env()
        orchestrator = build_orchestrator(config)

        assert orchestrator.config.refresh_interval == 90
        assert orchestrator.config.helius_api_key == "secret"

    def test_environment_interval_wins_over_saved_setting(self, workdir, monkeypatch):
        runner.invoke(app, ["settings", "--interval", "90"])
        monkeypatch.setenv("REFRESH_INTERVAL", "15")

        orchestrator = build_orchestrator(Config.from_env())

        assert orchestrator.config.refresh_interval == 15


class TestHelpers:
    def test_parse_wallet_with_name(self):
        account = parse_wallet(f"{WALLET_A}:Whale", 1)
        assert account.address == WALLET_A
        assert account.display_name == "Whale"

    def test_parse_wallet_default_name(self):
        assert parse_wallet(WALLET_A, 3).display_name == "Wallet 3"

    def test_parse_wallet_rejects_invalid_address(self):
        assert parse_wallet("not-a-wallet:Name", 1) is None

    def test_dashboard_lists_every_row(self, orchestrator, accounts, fake_rpc):
        fake_rpc.set_balance(WALLET_A, 5 * 10 ** 6)
        orchestrator.set_asset(MINT)
        orchestrator.replace_wallets(accounts)
        assert orchestrator.start_refresh().stage == SyncStage.DONE

        table = build_dashboard(orchestrator)

        assert table.row_count == 2
        assert "TEST" in table.title
