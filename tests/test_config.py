"""
Tests for client configuration loading and precedence.
"""

import pytest

from client.config import ClientConfiguration


ENV_VARS = (
    'SESSION_AUTH_SERVER_URL',
    'SESSION_AUTH_TIMEOUT',
    'SESSION_AUTH_STORAGE_BACKEND',
    'SESSION_AUTH_STORAGE_PATH',
    'SESSION_AUTH_LOG_LEVEL',
)


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "client.conf"
    path.write_text(
        "[server]\n"
        "url = http://file.example:9000\n"
        "timeout = 12\n"
        "login_path = /api/login\n"
        "\n"
        "[storage]\n"
        "backend = file\n"
        "path = /tmp/tokens.enc\n"
        "\n"
        "[session]\n"
        "check_on_start = false\n"
        "\n"
        "[logging]\n"
        "level = debug\n"
        "structured_logging = true\n"
    )
    return path


def test_defaults_without_file(tmp_path):
    config = ClientConfiguration(str(tmp_path / "missing.conf"))

    assert config.get_server_url() == "http://localhost:8080"
    assert config.get_server_timeout() == 30.0
    assert config.get_login_path() == "/login"
    assert config.get_storage_backend() == "auto"
    assert config.get_storage_path() is None
    assert config.get_service_name() == "session-auth-client"
    assert config.should_check_on_start() is True
    assert config.get_log_level() == "WARNING"
    assert config.get_log_file() is None
    assert config.get_structured_logging() is False
    assert config.get_audit_file() is None


def test_file_values(config_file):
    config = ClientConfiguration(str(config_file))

    assert config.get_server_url() == "http://file.example:9000"
    assert config.get_server_timeout() == 12.0
    assert config.get_login_path() == "/api/login"
    assert config.get_storage_backend() == "file"
    assert config.get_storage_path() == "/tmp/tokens.enc"
    assert config.should_check_on_start() is False
    assert config.get_log_level() == "DEBUG"
    assert config.get_structured_logging() is True


def test_environment_overrides_file(config_file, monkeypatch):
    monkeypatch.setenv('SESSION_AUTH_SERVER_URL', "http://env.example")
    monkeypatch.setenv('SESSION_AUTH_TIMEOUT', "2.5")
    monkeypatch.setenv('SESSION_AUTH_STORAGE_BACKEND', "memory")

    config = ClientConfiguration(str(config_file))

    assert config.get_server_url() == "http://env.example"
    assert config.get_server_timeout() == 2.5
    assert config.get_storage_backend() == "memory"
    # Not set in the environment, so the file still wins
    assert config.get_login_path() == "/api/login"


def test_override_beats_environment(config_file, monkeypatch):
    monkeypatch.setenv('SESSION_AUTH_SERVER_URL', "http://env.example")
    config = ClientConfiguration(str(config_file))

    config.set_override('server.url', "http://cli.example")
    assert config.get_server_url() == "http://cli.example"

    config.set_override('server.url', None)
    assert config.get_server_url() == "http://env.example"


def test_invalid_values_fall_back(tmp_path, monkeypatch):
    monkeypatch.setenv('SESSION_AUTH_TIMEOUT', "soon")
    monkeypatch.setenv('SESSION_AUTH_STORAGE_BACKEND', "floppy")

    config = ClientConfiguration(str(tmp_path / "missing.conf"))

    assert config.get_server_timeout() == 30.0
    assert config.get_storage_backend() == "auto"


def test_set_config_and_save(tmp_path):
    path = tmp_path / "client.conf"
    config = ClientConfiguration(str(path))
    config.set_config('server.url', "http://saved.example")
    config.set_config('session.check_on_start', False)
    config.save_configuration()

    reloaded = ClientConfiguration(str(path))

    assert reloaded.get_server_url() == "http://saved.example"
    assert reloaded.should_check_on_start() is False
    assert reloaded.get_server_timeout() == 30.0


def test_reload_picks_up_file_changes(config_file):
    config = ClientConfiguration(str(config_file))
    config_file.write_text("[server]\nurl = http://changed.example\n")

    config.reload_configuration()

    assert config.get_server_url() == "http://changed.example"
    assert config.get_storage_backend() == "auto"


def test_get_config_dotted_default(tmp_path):
    config = ClientConfiguration(str(tmp_path / "missing.conf"))

    assert config.get_config('server.nope', "fallback") == "fallback"
    assert config.get_config('nosection.key') is None
