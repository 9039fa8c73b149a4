import importlib
import sys

import pytest


@pytest.fixture
def server_module(tmp_path, monkeypatch):
    monkeypatch.setenv("RMD_CONFIG", str(tmp_path / "absent.ini"))
    monkeypatch.setenv("SENDGRID_API_KEY", "SG.key")
    monkeypatch.setenv("EMAIL_FROM", "noreply@example.com")
    monkeypatch.setenv("GMAIL_USER_1", "a@gmail.com")
    monkeypatch.setenv("GMAIL_APP_PASSWORD_1", "pass")
    monkeypatch.setenv("RMD_DB_PATH", str(tmp_path / "server.db"))
    monkeypatch.setenv("RMD_API_TOKEN", "tok")
    if "reminder_relay.server" in sys.modules:
        return importlib.reload(sys.modules["reminder_relay.server"])
    return importlib.import_module("reminder_relay.server")


def test_module_builds_app_from_environment(server_module):
    paths = {route.path for route in server_module.app.routes}
    assert {"/", "/send-reminder", "/email-service-status", "/jobs", "/metrics"} <= paths
    assert server_module.app.state.api_token == "tok"


def test_missing_configuration_exits(server_module, tmp_path):
    with pytest.raises(SystemExit) as excinfo:
        server_module.load_or_exit({"RMD_CONFIG": str(tmp_path / "absent.ini")})
    assert excinfo.value.code == 1
