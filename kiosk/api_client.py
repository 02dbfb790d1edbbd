import json
import os
import time
import urllib.error
import urllib.request
from typing import Optional

SETTINGS_FILE = os.path.join(os.path.dirname(os.path.abspath(__file__)), "app_settings.json")
REQUEST_TIMEOUT_SECONDS = 12


class ApiError(Exception):
    def __init__(self, status: int, message: str):
        super().__init__(f"API {status}: {message}")
        self.status = status
        self.message = message


class ApiOfflineError(Exception):
    """The API server could not be reached at all."""


def _load_settings(path=SETTINGS_FILE):
    try:
        with open(path, "r", encoding="utf-8-sig") as handle:
            data = json.load(handle)
            return data if isinstance(data, dict) else {}
    except (OSError, ValueError):
        return {}


def api_config(path=SETTINGS_FILE):
    cfg = _load_settings(path).get("api", {})
    if not isinstance(cfg, dict):
        cfg = {}
    return {
        "base_url": (os.getenv("API_BASE_URL") or cfg.get("base_url") or "").rstrip("/"),
        "email": os.getenv("API_USER") or cfg.get("email") or "",
        "password": os.getenv("API_PASSWORD") or cfg.get("password") or "",
    }


def _error_message(raw: str) -> str:
    try:
        parsed = json.loads(raw)
    except ValueError:
        return raw
    if not isinstance(parsed, dict):
        return raw
    return str(parsed.get("error") or parsed.get("detail") or raw)


class KioskApiClient:
    """Talks to the check-in endpoints with a cached staff token."""

    def __init__(self, base_url: str, email: str, password: str, timeout: float = REQUEST_TIMEOUT_SECONDS):
        if not base_url:
            raise ValueError("API base_url is not configured (API_BASE_URL or api.base_url).")
        self.base_url = base_url.rstrip("/")
        self.email = email
        self.password = password
        self.timeout = timeout
        self._token: Optional[str] = None
        self._token_exp = 0.0

    @classmethod
    def from_settings(cls, path=SETTINGS_FILE):
        cfg = api_config(path)
        return cls(cfg["base_url"], cfg["email"], cfg["password"])

    def _request(self, method, path, payload=None, token=None):
        data = None
        headers = {"Accept": "application/json"}
        if payload is not None:
            data = json.dumps(payload).encode("utf-8")
            headers["Content-Type"] = "application/json"
        if token:
            headers["Authorization"] = f"Bearer {token}"

        req = urllib.request.Request(url=f"{self.base_url}{path}", data=data, headers=headers, method=method)
        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as resp:
                body = resp.read().decode("utf-8")
                return json.loads(body) if body else {}
        except urllib.error.HTTPError as exc:
            raw = exc.read().decode("utf-8", errors="replace")
            raise ApiError(exc.code, _error_message(raw)) from exc
        except urllib.error.URLError as exc:
            raise ApiOfflineError(f"Cannot reach API server: {exc.reason}") from exc
        except (TimeoutError, ConnectionError) as exc:
            raise ApiOfflineError(f"Cannot reach API server: {exc}") from exc

    def login(self) -> str:
        if not self.email or not self.password:
            raise ValueError("API email/password are not configured (API_USER/API_PASSWORD).")
        response = self._request("POST", "/auth/login", payload={"email": self.email, "password": self.password})
        token = response.get("access_token")
        if not token:
            raise ApiError(500, "API login did not return access_token.")
        self._token = token
        self._token_exp = time.time() + int(response.get("expires_in_minutes", 60)) * 60
        return token

    def _ensure_token(self, force_refresh=False) -> str:
        if not force_refresh and self._token and (self._token_exp - 10) > time.time():
            return self._token
        return self.login()

    def _with_auth_request(self, method, path, payload=None):
        token = self._ensure_token()
        try:
            return self._request(method, path, payload=payload, token=token)
        except ApiError as exc:
            if exc.status != 401:
                raise
        return self._request(method, path, payload=payload, token=self._ensure_token(force_refresh=True))

    def record_check_in(self, payload: dict) -> dict:
        return self._with_auth_request("POST", "/check-ins", payload=payload)

    def sync_check_ins(self, items: list[dict]) -> dict:
        return self._with_auth_request("POST", "/check-ins/sync", payload={"items": items})

    def membership(self, profile_id: int) -> dict:
        return self._with_auth_request("GET", f"/check-ins/membership/{int(profile_id)}")
