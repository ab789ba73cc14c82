"""Tests for the backend REST client."""

import json
import re

import httpx
import pytest

from consentsync.client.api import BackendClient
from consentsync.client.store import ConnectivityFlags
from consentsync.core.config import BackendConfig
from consentsync.core.errors import (
    ConnectivityError,
    NotFoundError,
    RemoteError,
    SyncTimeoutError,
)

REST = "https://backend.test/rest/v1"


def make_config() -> BackendConfig:
    """Create a BackendConfig for testing."""
    return BackendConfig(url="https://backend.test", api_key="anon-key")


class TestRequests:
    """Tests for the individual queries."""

    @pytest.mark.asyncio
    async def test_probe_requests_count_only(self, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        httpx_mock.add_response(
            method="HEAD",
            url=f"{REST}/config?select=count",
            headers={"content-range": "0-0/1"},
        )

        async with BackendClient(make_config()) as client:
            await client.probe()

        request = httpx_mock.get_request()
        assert request.headers["Prefer"] == "count=exact"
        assert request.headers["apikey"] == "anon-key"
        assert request.headers["Authorization"] == "Bearer anon-key"
        assert request.headers["cache-control"] == "no-cache"

    @pytest.mark.asyncio
    async def test_fetch_active_consents(self, httpx_mock, make_row) -> None:  # type: ignore[no-untyped-def]
        httpx_mock.add_response(
            method="GET",
            url=re.compile(re.escape(f"{REST}/consents?") + r".*archived=eq\.false.*"),
            json=[make_row(consent_id=1), make_row(consent_id=2)],
        )

        async with BackendClient(make_config()) as client:
            rows = await client.fetch_consents(archived=False)

        assert [row["id"] for row in rows] == [1, 2]
        params = httpx_mock.get_request().url.params
        assert params["order"] == "created_at.desc"
        assert "artists:artist_id(name)" in params["select"]

    @pytest.mark.asyncio
    async def test_fetch_archived_consents(self, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        httpx_mock.add_response(
            method="GET",
            url=re.compile(re.escape(f"{REST}/consents?") + r".*archived=eq\.true.*"),
            json=[],
        )

        async with BackendClient(make_config()) as client:
            assert await client.fetch_consents(archived=True) == []

    @pytest.mark.asyncio
    async def test_find_artist_id(self, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        httpx_mock.add_response(
            method="GET",
            url=re.compile(re.escape(f"{REST}/artists?") + r".*name=eq\.Luna.*"),
            json=[{"id": 7}],
        )

        async with BackendClient(make_config()) as client:
            assert await client.find_artist_id("Luna") == 7

    @pytest.mark.asyncio
    async def test_find_artist_id_not_found(self, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        httpx_mock.add_response(
            method="GET",
            url=re.compile(re.escape(f"{REST}/artists?") + r".*"),
            json=[],
        )

        async with BackendClient(make_config()) as client:
            with pytest.raises(NotFoundError):
                await client.find_artist_id("Nobody")

    @pytest.mark.asyncio
    async def test_insert_returns_row(self, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        httpx_mock.add_response(
            method="POST",
            url=f"{REST}/consents",
            status_code=201,
            json=[{"id": 42, "created_at": "2025-03-01T10:00:00+00:00"}],
        )

        async with BackendClient(make_config()) as client:
            row = await client.insert_consent({"code": "TCF-AAAAA-BBBBB"})

        assert row["id"] == 42
        request = httpx_mock.get_request()
        assert request.headers["Prefer"] == "return=representation"
        assert json.loads(request.content) == {"code": "TCF-AAAAA-BBBBB"}

    @pytest.mark.asyncio
    async def test_insert_without_row_is_remote_error(self, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        httpx_mock.add_response(method="POST", url=f"{REST}/consents", json=[])

        async with BackendClient(make_config()) as client:
            with pytest.raises(RemoteError):
                await client.insert_consent({})

    @pytest.mark.asyncio
    async def test_archive_calls_rpc(self, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        httpx_mock.add_response(
            method="POST",
            url=f"{REST}/rpc/archive_consent",
            status_code=204,
        )

        async with BackendClient(make_config()) as client:
            assert await client.archive_consent("42") is None

        assert json.loads(httpx_mock.get_request().content) == {"consent_id": "42"}


class TestErrorMapping:
    """Tests for mapping failures onto the error taxonomy."""

    @pytest.mark.asyncio
    async def test_http_error_is_remote_error(self, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        httpx_mock.add_response(
            method="POST",
            url=f"{REST}/rpc/archive_consent",
            status_code=400,
            json={"message": "consent is locked"},
        )

        async with BackendClient(make_config()) as client:
            with pytest.raises(RemoteError) as exc_info:
                await client.archive_consent("42")

        assert exc_info.value.status_code == 400
        assert str(exc_info.value) == "consent is locked"

    @pytest.mark.asyncio
    async def test_non_json_error_body(self, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        httpx_mock.add_response(
            method="HEAD", url=f"{REST}/config?select=count", status_code=503
        )

        async with BackendClient(make_config()) as client:
            with pytest.raises(RemoteError) as exc_info:
                await client.probe()

        assert exc_info.value.status_code == 503

    @pytest.mark.asyncio
    async def test_connect_error_marks_unreachable(
        self, httpx_mock, flags: ConnectivityFlags
    ) -> None:  # type: ignore[no-untyped-def]
        httpx_mock.add_exception(
            httpx.ConnectError("connection refused"),
            url=f"{REST}/config?select=count",
        )

        async with BackendClient(make_config(), flags) as client:
            with pytest.raises(ConnectivityError):
                await client.probe()

        assert flags.network_unreachable is True

    @pytest.mark.asyncio
    async def test_timeout_is_sync_timeout(self, httpx_mock, flags: ConnectivityFlags) -> None:  # type: ignore[no-untyped-def]
        httpx_mock.add_exception(
            httpx.ReadTimeout("slow"),
            url=f"{REST}/config?select=count",
        )

        async with BackendClient(make_config(), flags) as client:
            with pytest.raises(SyncTimeoutError):
                await client.probe()

        assert flags.network_unreachable is True

    @pytest.mark.asyncio
    async def test_success_clears_unreachable(self, httpx_mock, flags: ConnectivityFlags) -> None:  # type: ignore[no-untyped-def]
        flags.mark_unreachable()
        httpx_mock.add_response(method="HEAD", url=f"{REST}/config?select=count")

        async with BackendClient(make_config(), flags) as client:
            await client.probe()

        assert flags.network_unreachable is False

    @pytest.mark.asyncio
    async def test_offline_mode_blocks_requests(self, httpx_mock, flags: ConnectivityFlags) -> None:  # type: ignore[no-untyped-def]
        flags.set_offline_mode(True)

        async with BackendClient(make_config(), flags) as client:
            with pytest.raises(ConnectivityError):
                await client.fetch_consents(archived=False)

        assert httpx_mock.get_requests() == []


class TestMalformedResponses:
    """Successful responses whose body cannot be used."""

    @pytest.mark.asyncio
    async def test_html_body_is_remote_error(self, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        """A captive portal answering 200 with HTML does not leak JSON errors."""
        httpx_mock.add_response(
            method="GET",
            url=re.compile(re.escape(f"{REST}/consents?") + r".*"),
            text="<html>captive portal</html>",
        )

        async with BackendClient(make_config()) as client:
            with pytest.raises(RemoteError, match="Malformed response") as exc_info:
                await client.fetch_consents(archived=False)

        assert exc_info.value.status_code == 200

    @pytest.mark.asyncio
    async def test_artist_row_without_id(self, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        httpx_mock.add_response(
            method="GET",
            url=re.compile(re.escape(f"{REST}/artists?") + r".*"),
            json=[{"name": "Luna"}],
        )

        async with BackendClient(make_config()) as client:
            with pytest.raises(RemoteError, match="no id"):
                await client.find_artist_id("Luna")

    @pytest.mark.asyncio
    async def test_insert_with_non_row_body(self, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        httpx_mock.add_response(method="POST", url=f"{REST}/consents", json=["oops"])

        async with BackendClient(make_config()) as client:
            with pytest.raises(RemoteError, match="Malformed response"):
                await client.insert_consent({"code": "TCF-AAAAA-BBBBB"})

    @pytest.mark.asyncio
    async def test_rpc_with_html_body(self, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        httpx_mock.add_response(
            method="POST",
            url=f"{REST}/rpc/archive_consent",
            text="<html>proxy error</html>",
        )

        async with BackendClient(make_config()) as client:
            with pytest.raises(RemoteError, match="Malformed response"):
                await client.archive_consent("5")
