"""Tests for configuration loading."""

from bookingsync.config import ClientConfig, Config, load_config


class TestConfig:
    """Tests for defaults, YAML files and environment overrides."""

    def test_defaults(self):
        config = load_config()
        assert isinstance(config, Config)
        assert config.server.port == 5050
        assert config.store.tombstone_retention_seconds == 3600
        assert config.client.reconnect_delays == [0.0, 2.0, 5.0, 10.0, 15.0, 30.0]
        assert config.client.final_retry_interval_seconds == 30.0
        assert config.client.max_reconnect_attempts is None

    def test_ws_url(self):
        assert ClientConfig(server_url="http://host:5050/").ws_url == "ws://host:5050/ws"
        assert ClientConfig(server_url="https://host").ws_url == "wss://host/ws"

    def test_load_yaml(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(
            "server:\n"
            "  port: 6000\n"
            "store:\n"
            "  tombstone_retention_seconds: 0\n"
            "client:\n"
            "  server_url: http://sync.local:6000\n"
            "  reconnect_delays: [1, 2]\n"
            "  max_reconnect_attempts: 5\n"
        )

        config = load_config(path)

        assert config.server.port == 6000
        assert config.server.host == "127.0.0.1"
        assert config.store.tombstone_retention_seconds == 0
        assert config.client.server_url == "http://sync.local:6000"
        assert config.client.reconnect_delays == [1.0, 2.0]
        assert config.client.max_reconnect_attempts == 5
        assert config.client.catchup_timeout_seconds == 10.0

    def test_missing_file_uses_defaults(self, tmp_path):
        config = load_config(tmp_path / "absent.yaml")
        assert config.server.port == 5050

    def test_empty_file(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("")
        assert load_config(path).client.ws_path == "/ws"

    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("BOOKINGSYNC_SERVER_PORT", "7000")
        monkeypatch.setenv("BOOKINGSYNC_CLIENT_SERVER_URL", "http://env.local:7000")
        monkeypatch.setenv("BOOKINGSYNC_CLIENT_RECONNECT_DELAYS", "0, 1.5,3")
        monkeypatch.setenv("BOOKINGSYNC_CLIENT_MAX_RECONNECT_ATTEMPTS", "4")
        monkeypatch.setenv("BOOKINGSYNC_STORE_TOMBSTONE_RETENTION", "60")

        config = load_config()

        assert config.server.port == 7000
        assert config.client.server_url == "http://env.local:7000"
        assert config.client.reconnect_delays == [0.0, 1.5, 3.0]
        assert config.client.max_reconnect_attempts == 4
        assert config.store.tombstone_retention_seconds == 60

    def test_env_overrides_file(self, tmp_path, monkeypatch):
        path = tmp_path / "config.yaml"
        path.write_text("server:\n  port: 6000\n")
        monkeypatch.setenv("BOOKINGSYNC_SERVER_PORT", "7000")
        assert load_config(path).server.port == 7000
