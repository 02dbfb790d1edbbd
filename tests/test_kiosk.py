import io
import json
import urllib.error

import pytest

from kiosk import api_client, cli
from kiosk.api_client import ApiError, ApiOfflineError, KioskApiClient
from kiosk.offline_store import OfflineCheckInStore


def _client():
    return KioskApiClient("http://kiosk.test/", "desk@example.com", "password123")


def test_api_config_prefers_environment(tmp_path, monkeypatch):
    settings = tmp_path / "app_settings.json"
    settings.write_text(json.dumps({"api": {"base_url": "http://file/", "email": "file@example.com"}}))
    monkeypatch.setenv("API_BASE_URL", "http://env/")
    monkeypatch.delenv("API_USER", raising=False)
    monkeypatch.delenv("API_PASSWORD", raising=False)

    cfg = api_client.api_config(str(settings))

    assert cfg == {"base_url": "http://env", "email": "file@example.com", "password": ""}


def test_client_requires_base_url():
    with pytest.raises(ValueError):
        KioskApiClient("", "a", "b")


def test_http_error_becomes_api_error(monkeypatch):
    def _urlopen(req, timeout):
        body = io.BytesIO(json.dumps({"error": "Member does not have an active membership plan."}).encode())
        raise urllib.error.HTTPError(req.full_url, 403, "Forbidden", {}, body)

    monkeypatch.setattr(api_client.urllib.request, "urlopen", _urlopen)

    with pytest.raises(ApiError) as exc:
        _client()._request("POST", "/check-ins", payload={})
    assert exc.value.status == 403
    assert exc.value.message == "Member does not have an active membership plan."


def test_unreachable_server_is_offline(monkeypatch):
    def _urlopen(req, timeout):
        raise urllib.error.URLError("connection refused")

    monkeypatch.setattr(api_client.urllib.request, "urlopen", _urlopen)

    with pytest.raises(ApiOfflineError):
        _client()._request("GET", "/health")


def test_expired_token_is_refreshed_once(monkeypatch):
    client = _client()
    calls = []

    def _request(method, path, payload=None, token=None):
        calls.append((path, token))
        if path == "/auth/login":
            return {"access_token": f"token-{len(calls)}", "expires_in_minutes": 60}
        if token == "token-1":
            raise ApiError(401, "Invalid or expired token")
        return {"results": []}

    monkeypatch.setattr(client, "_request", _request)

    assert client.sync_check_ins([{"profile_id": 1}]) == {"results": []}
    assert [path for path, _ in calls] == ["/auth/login", "/check-ins/sync", "/auth/login", "/check-ins/sync"]


def test_check_in_queues_when_offline(tmp_path):
    store = OfflineCheckInStore(str(tmp_path / "q.json"))

    class _Offline:
        def record_check_in(self, payload):
            raise ApiOfflineError("down")

    assert cli.check_in(_Offline(), store, 42, 1, member_name="Ana") == "queued"
    assert store.pending()[0].member_name == "Ana"


def test_check_in_online_leaves_no_queue(tmp_path):
    store = OfflineCheckInStore(str(tmp_path / "q.json"))
    sent = []

    class _Online:
        def record_check_in(self, payload):
            sent.append(payload)
            return {"created": True, "id": 1}

    assert cli.check_in(_Online(), store, 42, 1) == "online"
    assert store.all() == []
    assert sent[0]["client_ref"].startswith("offline_")


def test_rejected_check_in_is_not_queued(tmp_path):
    store = OfflineCheckInStore(str(tmp_path / "q.json"))

    class _Rejecting:
        def record_check_in(self, payload):
            raise ApiError(403, "Member does not have an active membership plan.")

    with pytest.raises(ApiError):
        cli.check_in(_Rejecting(), store, 42, 1)
    assert store.all() == []
