import base64
import json

import httpx
import pytest

from sendto import create_app
from sendto.context import get_context

AUTH_HOST = "auth.example.test"
SYNC_HOST = "sync.example.test"
DISCOVERY_URL = "https://discovery.example.test/discovery/v1/endpoints"
DOCUMENT_API_URL = "https://docs.example.test/doc/v2/files"

REGISTER_PATH = "/token/json/2/device/new"
REFRESH_PATH = "/token/json/2/user/new"
UPLOAD_PATH = "/doc/v2/files"
DISCOVERY_PATH = "/discovery/v1/endpoints"


def _b64(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode()


def make_token(exp, **claims) -> str:
    header = _b64(json.dumps({"alg": "HS256", "typ": "JWT"}).encode())
    payload = _b64(json.dumps(dict(claims, exp=exp)).encode())
    return f"{header}.{payload}.c2lnbmF0dXJl"


class FakeClock:
    def __init__(self, now=1_700_000_000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class FakeRemarkable:
    """Stand-in for discovery, token and document endpoints."""

    def __init__(self, clock):
        self.clock = clock
        self.calls = []
        self.discovery_status = 200
        self.discovery_body = {"webapp": AUTH_HOST, "notifications": SYNC_HOST, "mqttbroker": "mqtt.example.test"}
        self.link_codes = {"ABC123": "RT1"}
        self.valid_refresh_tokens = {"RT1"}
        self.token_ttl = 3600
        self.refresh_offline = False
        self.upload_status = 200
        self.registrations = []
        self.uploads = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.calls.append((request.method, request.url.host, path))

        if path == DISCOVERY_PATH:
            return httpx.Response(self.discovery_status, json=self.discovery_body)

        if request.url.host == AUTH_HOST and path == REGISTER_PATH:
            body = json.loads(request.content)
            self.registrations.append(body)
            refresh_token = self.link_codes.get(body.get("code"))
            if refresh_token is None:
                return httpx.Response(400, text="invalid one-time code")
            return httpx.Response(200, text=refresh_token)

        if request.url.host == AUTH_HOST and path == REFRESH_PATH:
            if self.refresh_offline:
                raise httpx.ConnectError("connection refused", request=request)
            auth = request.headers.get("authorization", "")
            refresh_token = auth[len("Bearer "):] if auth.startswith("Bearer ") else ""
            if refresh_token not in self.valid_refresh_tokens:
                return httpx.Response(401, text="unauthorized")
            return httpx.Response(200, text=make_token(int(self.clock()) + self.token_ttl))

        if path == UPLOAD_PATH:
            self.uploads.append({
                "headers": dict(request.headers),
                "body": request.content,
            })
            if self.upload_status >= 400:
                return httpx.Response(self.upload_status, text="upload rejected")
            return httpx.Response(self.upload_status, json={"docID": "doc-1"})

        return httpx.Response(404, text="not found")

    def count(self, path):
        return sum(1 for _, _, p in self.calls if p == path)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def remarkable(clock):
    return FakeRemarkable(clock)


@pytest.fixture
def http(remarkable):
    client = httpx.Client(transport=httpx.MockTransport(remarkable.handler))
    yield client
    client.close()


@pytest.fixture
def app(tmp_path, http, clock):
    app = create_app(
        {
            "TESTING": True,
            "DATA_DIR": str(tmp_path),
            "SIGNUP_DISABLED": False,
            "RATELIMIT_ENABLED": False,
            "JOBS_WORKER_ENABLED": False,
            "JOB_STEP_RETRIES": 1,
            "JOB_STEP_RETRY_DELAY": 0,
            "DISCOVERY_URL": DISCOVERY_URL,
            "DOCUMENT_API_URL": DOCUMENT_API_URL,
        },
        http=http,
        clock=clock,
    )
    yield app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def ctx(app):
    with app.app_context():
        yield get_context()


@pytest.fixture
def registered(ctx):
    """Auth id of an account registered with link code ABC123."""
    ctx.accounts.get("acct-1").register("ABC123", "dev-1")
    return "acct-1"
