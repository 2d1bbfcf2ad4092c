"""
Tests for mixer configuration.
"""

from pathlib import Path

import pytest
from cjcore.models import NetworkType
from pydantic import ValidationError

from mixer.config import MixerConfig, Settings


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    for name in ("NETWORK", "HOST", "RPC_USER", "RPC_PASSWORD", "DATA_DIR", "LOG_LEVEL"):
        monkeypatch.delenv(name, raising=False)
    # Keep a developer's .env out of the way
    monkeypatch.chdir(tmp_path)


class TestSettings:
    """Tests for environment settings."""

    def test_defaults(self) -> None:
        """Test default settings target a local regtest node."""
        settings = Settings()
        assert settings.network == "regtest"
        assert settings.rpc_url == "http://127.0.0.1:18443"
        assert settings.data_dir == Path("./data")
        assert settings.log_level == "INFO"

    def test_environment(self, monkeypatch) -> None:
        """Test settings are read from environment variables."""
        monkeypatch.setenv("NETWORK", "signet")
        monkeypatch.setenv("HOST", "https://node.example:38332")
        monkeypatch.setenv("RPC_USER", "alice")
        monkeypatch.setenv("DATA_DIR", "/srv/mixer")

        settings = Settings()

        assert settings.network == "signet"
        assert settings.rpc_url == "https://node.example:38332"
        assert settings.rpc_user == "alice"
        assert settings.data_dir == Path("/srv/mixer")

    def test_env_file(self, tmp_path) -> None:
        """Test settings are read from a .env file and bare hosts get a scheme."""
        (tmp_path / ".env").write_text("HOST=10.0.0.5:8332\nLOG_LEVEL=DEBUG\n")
        settings = Settings()
        assert settings.rpc_url == "http://10.0.0.5:8332"
        assert settings.log_level == "DEBUG"

    def test_unknown_network(self, monkeypatch) -> None:
        """Test an unknown network is rejected."""
        monkeypatch.setenv("NETWORK", "litecoin")
        with pytest.raises(ValidationError):
            Settings()


class TestMixerConfig:
    """Tests for round parameters."""

    def test_defaults(self) -> None:
        """Test default round parameters."""
        config = MixerConfig()
        assert config.network == NetworkType.REGTEST
        assert config.denomination == 5_000
        assert config.output_count == 5
        assert config.fee_rate == 10
        assert config.dust_threshold == 546

    def test_network_from_string(self) -> None:
        """Test the network accepts its string name."""
        assert MixerConfig(network="signet").network == NetworkType.SIGNET

    def test_denomination_below_dust(self) -> None:
        """Test the denomination must clear the dust threshold."""
        with pytest.raises(ValidationError, match="below the dust threshold"):
            MixerConfig(denomination=500)

    def test_custom_dust_threshold(self) -> None:
        """Test a lower dust threshold allows smaller denominations."""
        assert MixerConfig(denomination=500, dust_threshold=294).denomination == 500

    @pytest.mark.parametrize(
        "field,value",
        [
            ("denomination", 0),
            ("output_count", 0),
            ("output_count", 101),
            ("fee_rate", 0),
            ("account", -1),
            ("min_confirmations", -1),
        ],
    )
    def test_out_of_range(self, field, value) -> None:
        """Test out-of-range parameters are rejected."""
        with pytest.raises(ValidationError):
            MixerConfig(**{field: value})
