from repcard.config import Settings


def test_rpc_url_alias(monkeypatch):
    """RPC endpoint should load from the LEDGER_RPC_URL alias."""

    monkeypatch.delenv("RPC_URL", raising=False)
    monkeypatch.setenv("LEDGER_RPC_URL", "https://rpc.api.moonbase.moonbeam.network")

    settings = Settings()

    assert settings.rpc_url == "https://rpc.api.moonbase.moonbeam.network"


def test_supabase_anon_key_alias(monkeypatch):
    """The anon key is accepted when no service key is configured."""

    monkeypatch.delenv("SUPABASE_KEY", raising=False)
    monkeypatch.setenv("SUPABASE_ANON_KEY", "anon")
    monkeypatch.setenv("SUPABASE_URL", "https://project.supabase.co")

    settings = Settings()

    assert settings.supabase_key == "anon"
    assert settings.has_claims_log is True


def test_contract_address_lowercased(monkeypatch):
    monkeypatch.setenv("REPUTATION_CARD_ADDRESS", "0x5FbDB2315678afecb367f032d93F642f64180aa3")

    settings = Settings()

    assert settings.reputation_card_address == "0x5fbdb2315678afecb367f032d93f642f64180aa3"


def test_retry_defaults(monkeypatch):
    for name in ("TX_MAX_RETRIES", "TX_INITIAL_DELAY_SECONDS", "TX_BACKOFF_MULTIPLIER", "TX_MAX_DELAY_SECONDS"):
        monkeypatch.delenv(name, raising=False)

    settings = Settings(_env_file=None)

    assert settings.tx_max_retries == 3
    assert settings.tx_initial_delay_seconds == 1.0
    assert settings.tx_backoff_multiplier == 2.0
    assert settings.tx_max_delay_seconds is None


def test_console_logs_from_env(monkeypatch):
    monkeypatch.setenv("LOG_JSON", "false")

    settings = Settings(_env_file=None)

    assert settings.log_json is False
