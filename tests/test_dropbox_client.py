import httpx
import pytest

from conftest import API_URL, TOKEN_URL, FakeClock, FakeDropbox
from dropfolio.auth import CredentialProvider
from dropfolio.config import DropboxSettings, RetryPolicy
from dropfolio.errors import UpstreamAuthError, UpstreamError, UpstreamTimeoutError
from dropfolio.services import DropboxService


class RecordingSleep:
    def __init__(self) -> None:
        self.delays = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def _service(http, settings, *, attempts=3, sleep=None):
    credentials = CredentialProvider(settings, http, clock=FakeClock())
    policy = RetryPolicy(attempts=attempts, backoff_seconds=0.5)
    return DropboxService(http, credentials, settings, policy, sleep=sleep or RecordingSleep())


def _refreshable(**overrides) -> DropboxSettings:
    values = {
        "access_token": "stale",
        "refresh_token": "refresh",
        "app_key": "key",
        "app_secret": "secret",
        "api_url": API_URL,
        "token_url": TOKEN_URL,
    }
    values.update(overrides)
    return DropboxSettings(**values)


@pytest.mark.anyio
async def test_unauthorized_triggers_one_refresh_and_retry():
    fake = FakeDropbox({"/base": ["a.jpg"]})
    fake.valid_tokens = {"refreshed-1"}
    async with fake.client() as http:
        service = _service(http, _refreshable())

        page = await service.list_folder("/base")

    assert [entry.name for entry in page.entries] == ["a.jpg"]
    assert service.credentials.refresh_count == 1
    assert len(fake.endpoint_calls("files/list_folder")) == 2


@pytest.mark.anyio
async def test_second_unauthorized_is_terminal():
    fake = FakeDropbox({"/base": ["a.jpg"]})
    fake.valid_tokens = set()
    async with fake.client() as http:
        service = _service(http, _refreshable())

        with pytest.raises(UpstreamAuthError):
            await service.list_folder("/base")

    assert service.credentials.refresh_count == 1
    assert len(fake.endpoint_calls("files/list_folder")) == 2


@pytest.mark.anyio
async def test_unauthorized_static_token_does_not_refresh():
    fake = FakeDropbox({"/base": ["a.jpg"]})
    fake.valid_tokens = set()
    async with fake.client() as http:
        service = _service(http, DropboxSettings(access_token="static", api_url=API_URL))

        with pytest.raises(UpstreamAuthError):
            await service.list_folder("/base")

    assert fake.token_exchanges == 0


@pytest.mark.anyio
async def test_rate_limit_honours_retry_after():
    calls = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        if calls["n"] == 1:
            return httpx.Response(429, headers={"Retry-After": "2"}, json={"error_summary": "too_many_requests/"})
        return httpx.Response(200, json={"link": "https://dl.dropbox.test/a.jpg"})

    sleep = RecordingSleep()
    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
        service = _service(http, DropboxSettings(access_token="t", api_url=API_URL), sleep=sleep)

        link = await service.get_temporary_link("/a.jpg")

    assert link == "https://dl.dropbox.test/a.jpg"
    assert sleep.delays == [2.0]


@pytest.mark.anyio
async def test_server_errors_retry_with_backoff_then_fail():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, text="unavailable")

    sleep = RecordingSleep()
    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
        service = _service(http, DropboxSettings(access_token="t", api_url=API_URL), sleep=sleep)

        with pytest.raises(UpstreamError) as excinfo:
            await service.get_temporary_link("/a.jpg")

    assert excinfo.value.status == 503
    assert sleep.delays == [0.5, 1.0]
    assert service.api_calls == 3


@pytest.mark.anyio
async def test_forced_refresh_is_not_repeated_across_retries():
    replies = ["401", "timeout", "401", "200"]
    exchanges = []

    def handler(request: httpx.Request) -> httpx.Response:
        if str(request.url) == TOKEN_URL:
            exchanges.append(request)
            return httpx.Response(200, json={"access_token": f"refreshed-{len(exchanges)}", "expires_in": 14400})
        reply = replies.pop(0)
        if reply == "timeout":
            raise httpx.ReadTimeout("timed out", request=request)
        if reply == "401":
            return httpx.Response(401, json={"error_summary": "expired_access_token/"})
        return httpx.Response(200, json={"link": "L"})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
        service = _service(http, _refreshable())

        with pytest.raises(UpstreamAuthError):
            await service.get_temporary_link("/base/a.jpg")

    assert len(exchanges) == 1
    assert service.credentials.refresh_count == 1
    assert replies == ["200"]


@pytest.mark.anyio
async def test_timeout_is_retryable_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectTimeout("timed out", request=request)

    sleep = RecordingSleep()
    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
        service = _service(http, DropboxSettings(access_token="t", api_url=API_URL), attempts=2, sleep=sleep)

        with pytest.raises(UpstreamTimeoutError):
            await service.current_account()

    assert len(sleep.delays) == 1


@pytest.mark.anyio
async def test_client_errors_are_not_retried():
    fake = FakeDropbox()
    sleep = RecordingSleep()
    async with fake.client() as http:
        service = _service(http, DropboxSettings(access_token="t", api_url=API_URL), sleep=sleep)

        with pytest.raises(UpstreamError) as excinfo:
            await service.list_folder("/missing")

    assert "path/not_found" in str(excinfo.value)
    assert not excinfo.value.retryable
    assert sleep.delays == []


@pytest.mark.anyio
async def test_parameterless_call_sends_null_body():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["body"] = request.content
        seen["auth"] = request.headers["Authorization"]
        return httpx.Response(200, json={"email": "owner@example.test"})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
        service = _service(http, DropboxSettings(access_token="t", api_url=API_URL))
        account = await service.current_account()

    assert account["email"] == "owner@example.test"
    assert seen == {"body": b"null", "auth": "Bearer t"}


@pytest.mark.anyio
async def test_batch_links_preserve_request_order():
    fake = FakeDropbox()
    fake.failing_links = {"/b.jpg"}
    async with fake.client() as http:
        service = _service(http, DropboxSettings(access_token="t", api_url=API_URL))
        results = await service.get_temporary_links_batch(["/a.jpg", "/b.jpg", "/c.jpg"])

    assert [result.path for result in results] == ["/a.jpg", "/b.jpg", "/c.jpg"]
    assert type(results[1]).__name__ == "LinkFailure"
    assert results[2].url == FakeDropbox.link_for("/c.jpg")
