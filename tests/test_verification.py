import httpx
import pytest

from healer_core.exceptions import CommandTimeout, RemoteConnectionError
from healer_core.utils import sha256_hex
from healer_core.verification.service import SiteVerifier, find_markers, is_white_screen

HEALTHY = "<html><head><title>My Blog</title></head><body><h1>Hello world!</h1></body></html>"
FATAL = (
    "<html><head><title>WordPress &rsaquo; Error</title></head><body>"
    "<p>There has been a critical error on this website.</p></body></html>"
)
MAINTENANCE = "Briefly unavailable for scheduled maintenance. Check back in a minute."


def verifier_for(settings, handler):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return SiteVerifier(settings, client=client)


def serve(status, body):
    return lambda request: httpx.Response(status, text=body)


@pytest.mark.asyncio
async def test_healthy_page_passes(settings):
    verifier = verifier_for(settings, serve(200, HEALTHY))
    result = await verifier.verify("https://blog.example.com")

    assert result.passed
    assert result.reason == "Site healthy (HTTP 200)"
    assert result.details["page"]["title"] == "My Blog"
    assert all(result.details["checks"].values())


@pytest.mark.asyncio
async def test_critical_error_page_fails(settings):
    verifier = verifier_for(settings, serve(500, FATAL))
    result = await verifier.verify("https://blog.example.com")

    assert not result.passed
    assert "http_status" in result.reason
    assert "no_fatal_errors" in result.reason
    assert "there has been a critical error on this website" in result.reason


@pytest.mark.asyncio
async def test_maintenance_page_fails(settings):
    verifier = verifier_for(settings, serve(503, MAINTENANCE))
    result = await verifier.verify("https://blog.example.com")

    assert not result.passed
    assert result.details["checks"]["not_maintenance"] is False


@pytest.mark.asyncio
async def test_white_screen_fails(settings):
    verifier = verifier_for(settings, serve(200, "   "))
    result = await verifier.verify("https://blog.example.com")

    assert not result.passed
    assert result.details["checks"]["not_white_screen"] is False


@pytest.mark.asyncio
async def test_unreachable_site_is_a_failed_result(settings):
    def refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    result = await verifier_for(settings, refuse).verify("https://blog.example.com")

    assert not result.passed
    assert result.reason.startswith("Site unreachable")
    assert result.details == {"checks": {"reachable": False}}


@pytest.mark.asyncio
async def test_transient_network_error_is_retried(settings):
    calls = []

    def flaky(request):
        calls.append(request.url)
        if len(calls) == 1:
            raise httpx.ConnectError("connection reset", request=request)
        return httpx.Response(200, text=HEALTHY)

    result = await verifier_for(settings, flaky).verify("https://blog.example.com")

    assert result.passed
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_unreachable_only_after_retry_budget_is_spent(settings):
    calls = []

    def refuse(request):
        calls.append(request.url)
        raise httpx.ConnectError("connection refused", request=request)

    result = await verifier_for(settings, refuse).verify("https://blog.example.com")

    assert not result.passed
    assert len(calls) == settings.PHASE_RETRY_ATTEMPTS


@pytest.mark.asyncio
async def test_capture_maps_transport_errors(settings):
    def slow(request):
        raise httpx.ReadTimeout("timed out", request=request)

    def refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(CommandTimeout):
        await verifier_for(settings, slow).capture("https://blog.example.com")
    with pytest.raises(RemoteConnectionError):
        await verifier_for(settings, refuse).capture("https://blog.example.com")


@pytest.mark.asyncio
async def test_baseline_comparison(settings):
    verifier = verifier_for(settings, serve(200, HEALTHY))
    baseline = (await verifier_for(settings, serve(500, FATAL)).capture("https://blog.example.com")).as_metadata()

    result = await verifier.verify("https://blog.example.com", baseline=baseline)

    assert result.details["changed_from_baseline"] is True
    assert result.details["baseline_status_code"] == 500
    assert result.details["page"]["content_hash"] == sha256_hex(HEALTHY)


def test_markers_and_white_screen_helpers():
    assert find_markers("PHP Fatal error: Allowed memory size exhausted")["fatal"] == ["fatal error", "allowed memory size"]
    assert find_markers(HEALTHY) == {"fatal": [], "maintenance": []}
    assert is_white_screen("")
    assert is_white_screen("ok")
    assert not is_white_screen(HEALTHY)
