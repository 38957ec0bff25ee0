"""
NutriSaath Backend: Gate and Route Tests
==========================================

End-to-end through the ASGI app: gate dependencies, error envelope, status
codes and headers. Services below the routes are replaced with mocks via
dependency_overrides or patch().

What we test:
    ✅ 401 envelope for missing/invalid tokens, before any throttle point is spent
    ✅ 429 with Retry-After once a route policy is exhausted
    ✅ 400 for invalid barcodes and bodies
    ✅ Barcode lookup found / not found, product routes, Poshan summary
    ✅ Unknown routes use the same envelope
"""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from starlette.requests import Request

from nutrisaath.config import settings
from nutrisaath.database import get_db_session
from nutrisaath.exceptions import UpstreamUnavailable
from nutrisaath.middleware.gate import GateContext, authenticated, get_client_address
from nutrisaath.schemas.chat import ChatResponse
from nutrisaath.schemas.product import ProductRecord, ProductResolution, ProductSearchResult
from nutrisaath.services.product_service import get_product_resolver

RECORD = ProductRecord(
    barcode="8901063010024",
    name="Parle-G Gold",
    brand="Parle",
    images=[{"type": "front", "url": "https://images.off/front.jpg"}],
    last_fetched_at=datetime(2026, 10, 1, tzinfo=timezone.utc),
)


def _assert_envelope(response, status_code):
    assert response.status_code == status_code
    body = response.json()
    assert set(body) == {"error"}
    assert set(body["error"]) == {"message", "code", "request_id"}
    assert body["error"]["code"] == status_code
    return body["error"]


@pytest.fixture
def resolver():
    mock = MagicMock()
    mock.resolve = AsyncMock(return_value=ProductResolution(record=RECORD, origin="upstream"))
    mock.search = AsyncMock(return_value=ProductSearchResult(products=[RECORD], origin="cache"))
    return mock


@pytest.fixture
def override_resolver(resolver):
    from nutrisaath.main import app

    app.dependency_overrides[get_product_resolver] = lambda: resolver
    return resolver


@pytest.fixture
def override_db(mock_db_session):
    from nutrisaath.main import app

    async def _session():
        yield mock_db_session

    app.dependency_overrides[get_db_session] = _session
    return mock_db_session


def _request(headers=(), client=("10.0.0.5", 41000)) -> Request:
    return Request({
        "type": "http",
        "method": "GET",
        "path": "/",
        "headers": list(headers),
        "client": client,
    })


class TestGateContext:

    @pytest.mark.asyncio
    async def test_authenticated_carries_address_and_identity(self, identity):
        gate = await authenticated(_request(), identity=identity)
        assert gate == GateContext(client_address="10.0.0.5", identity=identity)

    def test_forwarded_for_ignored_by_default(self):
        request = _request(headers=[(b"x-forwarded-for", b"203.0.113.7, 10.0.0.1")])
        assert get_client_address(request) == "10.0.0.5"

    def test_forwarded_for_first_hop_when_trusted(self, monkeypatch):
        monkeypatch.setattr(settings, "trust_forwarded_for", True)
        request = _request(headers=[(b"x-forwarded-for", b"203.0.113.7, 10.0.0.1")])
        assert get_client_address(request) == "203.0.113.7"

    def test_unknown_peer_is_anonymous(self):
        assert get_client_address(_request(client=None)) == "anonymous"


class TestAuthGate:

    @pytest.mark.asyncio
    async def test_missing_token_is_401(self, test_client):
        response = await test_client.get("/api/poshan/summary")
        error = _assert_envelope(response, 401)
        assert error["message"] == "Authentication required"

    @pytest.mark.asyncio
    async def test_wrong_scheme_is_401(self, test_client):
        response = await test_client.get(
            "/api/poshan/summary", headers={"Authorization": "Token abc"}
        )
        _assert_envelope(response, 401)

    @pytest.mark.asyncio
    async def test_bad_signature_is_401(self, test_client):
        response = await test_client.get(
            "/api/poshan/summary", headers={"Authorization": "Bearer a.b.c"}
        )
        error = _assert_envelope(response, 401)
        assert error["message"] == "Invalid or expired token"

    @pytest.mark.asyncio
    async def test_request_id_is_echoed(self, test_client):
        response = await test_client.get(
            "/api/poshan/summary", headers={"X-Request-ID": "req-42"}
        )
        assert response.headers["X-Request-ID"] == "req-42"
        assert _assert_envelope(response, 401)["request_id"] == "req-42"

    @pytest.mark.asyncio
    async def test_poshan_summary_for_verified_caller(self, test_client, auth_header, identity):
        response = await test_client.get("/api/poshan/summary", headers=auth_header)

        assert response.status_code == 200
        body = response.json()
        assert body["user_id"] == identity.subject_id
        assert body["status"] == "ok"
        assert body["message"] == "Sandbox Poshan summary placeholder"

    @pytest.mark.asyncio
    async def test_auth_failure_spends_no_throttle_points(self, test_client, fresh_throttle_store, override_db):
        response = await test_client.post("/api/chat", json={"message": "hello"})

        _assert_envelope(response, 401)
        assert len(fresh_throttle_store) == 0

    @pytest.mark.asyncio
    async def test_auth_runs_before_body_validation(self, test_client, override_db):
        response = await test_client.post("/api/chat", json={"message": ""})
        _assert_envelope(response, 401)


class TestChatRoute:

    @pytest.mark.asyncio
    async def test_chat_passes_identity_to_service(self, test_client, auth_header, identity, override_db):
        with patch("nutrisaath.routes.chat.chat_service") as mock_service:
            mock_service.send_message = AsyncMock(
                return_value=ChatResponse(session_id="s-1", reply="Try poha with peanuts.")
            )
            response = await test_client.post(
                "/api/chat", json={"message": "Healthy breakfast?"}, headers=auth_header
            )

        assert response.status_code == 200
        assert response.json() == {"session_id": "s-1", "reply": "Try poha with peanuts."}
        kwargs = mock_service.send_message.await_args.kwargs
        assert kwargs["user_id"] == identity.subject_id
        assert kwargs["message"] == "Healthy breakfast?"
        assert kwargs["session_id"] is None

    @pytest.mark.asyncio
    async def test_chat_throttled_per_identity(self, test_client, auth_header, override_db):
        with patch("nutrisaath.routes.chat.chat_service") as mock_service:
            mock_service.send_message = AsyncMock(
                return_value=ChatResponse(session_id="s-1", reply="ok")
            )
            for _ in range(settings.chat_rate_points):
                ok = await test_client.post("/api/chat", json={"message": "hi"}, headers=auth_header)
                assert ok.status_code == 200

            response = await test_client.post("/api/chat", json={"message": "hi"}, headers=auth_header)

        error = _assert_envelope(response, 429)
        assert error["message"] == "Too many requests"
        assert 1 <= int(response.headers["Retry-After"]) <= settings.chat_rate_window
        assert mock_service.send_message.await_count == settings.chat_rate_points

    @pytest.mark.asyncio
    async def test_oversized_message_is_400(self, test_client, auth_header, override_db):
        response = await test_client.post(
            "/api/chat", json={"message": "x" * 501}, headers=auth_header
        )
        _assert_envelope(response, 400)


class TestBarcodeLookupRoute:

    @pytest.mark.asyncio
    async def test_found(self, test_client, override_resolver):
        response = await test_client.post("/api/barcode/lookup", json={"barcode": "8901063010024"})

        assert response.status_code == 200
        body = response.json()
        assert body["found"] is True
        assert body["source"] == "upstream"
        assert body["product"]["name"] == "Parle-G Gold"
        override_resolver.resolve.assert_awaited_once_with("8901063010024")

    @pytest.mark.asyncio
    async def test_not_found(self, test_client, override_resolver):
        override_resolver.resolve.return_value = ProductResolution(record=None, origin="notFound")

        response = await test_client.post("/api/barcode/lookup", json={"barcode": "00000000"})

        assert response.status_code == 200
        assert response.json() == {"found": False}

    @pytest.mark.parametrize(
        "barcode",
        ["1234567", "123456789012345", "12345abc", "", "١٢٣٤٥٦٧٨", "１２３４５６７８", "12345678\n"],
    )
    @pytest.mark.asyncio
    async def test_invalid_barcode_is_400(self, test_client, override_resolver, barcode):
        response = await test_client.post("/api/barcode/lookup", json={"barcode": barcode})

        _assert_envelope(response, 400)
        override_resolver.resolve.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_throttled_per_address(self, test_client, override_resolver):
        for _ in range(settings.barcode_rate_points):
            ok = await test_client.post("/api/barcode/lookup", json={"barcode": "12345678"})
            assert ok.status_code == 200

        response = await test_client.post("/api/barcode/lookup", json={"barcode": "12345678"})

        _assert_envelope(response, 429)
        assert "Retry-After" in response.headers
        assert override_resolver.resolve.await_count == settings.barcode_rate_points

    @pytest.mark.asyncio
    async def test_upstream_failure_is_502(self, test_client, override_resolver):
        override_resolver.resolve.side_effect = UpstreamUnavailable()

        response = await test_client.post("/api/barcode/lookup", json={"barcode": "12345678"})

        error = _assert_envelope(response, 502)
        assert error["message"] == "Product source is temporarily unavailable"


class TestProductRoutes:

    @pytest.mark.asyncio
    async def test_barcode_lookup_with_nocache(self, test_client, override_resolver):
        response = await test_client.get("/api/products/barcode/8901063010024?nocache=1")

        assert response.status_code == 200
        assert response.json()["source"] == "upstream"
        override_resolver.resolve.assert_awaited_once_with("8901063010024", skip_cache=True)

    @pytest.mark.asyncio
    async def test_not_found_returns_null_product(self, test_client, override_resolver):
        override_resolver.resolve.return_value = ProductResolution(record=None, origin="notFound")

        response = await test_client.get("/api/products/barcode/00000000")

        assert response.status_code == 200
        assert response.json() == {"product": None, "source": "notFound"}

    @pytest.mark.parametrize("ean", ["abc", "١٢٣٤٥٦٧٨", "١٢٣٤٥٦٧٨٩٠١٢٣"])
    @pytest.mark.asyncio
    async def test_invalid_barcode_path_is_400(self, test_client, override_resolver, ean):
        response = await test_client.get(f"/api/products/barcode/{ean}")
        _assert_envelope(response, 400)
        override_resolver.resolve.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_search(self, test_client, override_resolver):
        response = await test_client.get("/api/products/search?q=parle&page=2&page_size=5")

        assert response.status_code == 200
        body = response.json()
        assert body["source"] == "cache"
        assert [p["barcode"] for p in body["products"]] == ["8901063010024"]
        override_resolver.search.assert_awaited_once_with("parle", page=2, page_size=5, skip_cache=False)


class TestFallbackHandlers:

    @pytest.mark.asyncio
    async def test_unknown_route_uses_envelope(self, test_client):
        response = await test_client.get("/api/does-not-exist")
        error = _assert_envelope(response, 404)
        assert error["message"] == "The requested resource was not found"

    @pytest.mark.asyncio
    async def test_health(self, test_client):
        with patch("nutrisaath.routes.health.gemini_service") as mock_gemini:
            mock_gemini.circuit_breaker.state = "closed"
            mock_gemini.health_check = AsyncMock(return_value=True)
            response = await test_client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["database"] == "connected"
        assert body["commit"] == settings.release_sha
