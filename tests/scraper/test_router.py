"""API tests for the scraper routes, driven in-process.

HTTP routes go through ``httpx.AsyncClient`` + ``ASGITransport``; the
WebSocket route goes through Starlette's ``TestClient``.  Outbound fetches
triggered by the routes are mocked with respx on the pinned addresses.
"""

from __future__ import annotations

import asyncio
from typing import Any

import httpx
import pytest
import respx
from httpx import AsyncClient
from starlette.testclient import TestClient

from webtoepub.api.dependencies import EngineServices, build_services
from webtoepub.api.main import create_app
from webtoepub.scraper.tasks import JobReporter

NOVELS = "http://93.184.216.34"
IMAGES = "http://1.1.1.1"

_TOC_HTML = """
<html><head><meta property="og:title" content="Route Novel"></head><body>
  <a href="/book/chapter-1">Chapter 1</a>
  <a href="/book/chapter-2">Chapter 2</a>
</body></html>
"""


# ---------------------------------------------------------------------------
# System routes
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
class TestSystemRoutes:
    async def test_root(self, api_client: AsyncClient) -> None:
        response = await api_client.get("/")

        assert response.status_code == 200
        assert response.json() == {"status": "ok", "service": "WebToEpub Scraper Engine"}
        assert response.headers["x-request-id"]

    async def test_health(self, api_client: AsyncClient) -> None:
        response = await api_client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    async def test_unknown_route(self, api_client: AsyncClient) -> None:
        response = await api_client.get("/api/does-not-exist")

        assert response.status_code == 404
        assert response.json() == {"error": "Not Found"}

    async def test_metrics_exposed(self, api_client: AsyncClient) -> None:
        await api_client.get("/health")
        response = await api_client.get("/metrics")

        assert response.status_code == 200
        assert "http_requests_total" in response.text

    async def test_error_bodies_documented(self, api_client: AsyncClient) -> None:
        schema = (await api_client.get("/openapi.json")).json()

        proxy = schema["paths"]["/api/proxy-image"]["get"]["responses"]
        error_ref = proxy["403"]["content"]["application/json"]["schema"]["$ref"]
        assert error_ref.endswith("/ErrorResponse")
        assert "400" in schema["paths"]["/api/novel-info"]["post"]["responses"]

    async def test_cors_allows_any_origin_by_default(self, api_client: AsyncClient) -> None:
        response = await api_client.get("/", headers={"Origin": "https://reader.example"})

        assert response.headers["access-control-allow-origin"] == "*"


# ---------------------------------------------------------------------------
# POST /api/novel-info
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
class TestNovelInfo:
    async def test_empty_url_rejected_without_resolving(
        self, api_client: AsyncClient, fake_dns
    ) -> None:
        response = await api_client.post("/api/novel-info", json={"url": "", "jobId": "job-1"})

        assert response.status_code == 400
        assert response.json() == {"error": "URL is required"}
        assert fake_dns.calls == []

    async def test_missing_job_id_rejected(self, api_client: AsyncClient) -> None:
        response = await api_client.post(
            "/api/novel-info", json={"url": "http://novels.example/book"}
        )

        assert response.status_code == 400
        assert "jobId" in response.json()["error"]

    async def test_malformed_body_rejected(self, api_client: AsyncClient) -> None:
        response = await api_client.post(
            "/api/novel-info",
            content=b"{not json",
            headers={"Content-Type": "application/json"},
        )

        assert response.status_code == 400
        assert "error" in response.json()

    async def test_job_queued_and_completed_over_channel(
        self, api_client: AsyncClient, services: EngineServices
    ) -> None:
        subscriber = services.broadcaster.subscribe("listener", "job-ok")

        with respx.mock(base_url=NOVELS) as mock:
            mock.get("/book").mock(return_value=httpx.Response(200, text=_TOC_HTML))

            response = await api_client.post(
                "/api/novel-info", json={"url": "http://novels.example/book", "jobId": "job-ok"}
            )
            assert response.status_code == 200
            assert response.json()["status"] == "queued"

            await services.orchestrator.wait_idle()

        events = subscriber.drain()
        assert events[-1].event == "complete"
        assert all(e.event == "progress" for e in events[:-1])
        novel = events[-1].data["novel"]
        assert novel["title"] == "Route Novel"
        assert len(novel["chapters"]) == 2

    async def test_blocked_target_reported_as_error_event(
        self, api_client: AsyncClient, services: EngineServices
    ) -> None:
        subscriber = services.broadcaster.subscribe("listener", "job-ssrf")

        response = await api_client.post(
            "/api/novel-info", json={"url": "http://internal.example/", "jobId": "job-ssrf"}
        )
        await services.orchestrator.wait_idle()

        assert response.status_code == 200
        final = subscriber.drain()[-1]
        assert final.event == "error"
        assert "127.0.0.1" in final.data["message"]


# ---------------------------------------------------------------------------
# POST /api/chapters-batch
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
class TestChaptersBatch:
    @pytest.mark.parametrize("body", [{}, {"chapters": "nope"}, {"chapters": {"url": "x"}}])
    async def test_non_array_rejected(self, api_client: AsyncClient, body: dict) -> None:
        response = await api_client.post("/api/chapters-batch", json=body)

        assert response.status_code == 400
        assert response.json() == {"error": "chapters array is required"}

    async def test_results_per_chapter(self, api_client: AsyncClient) -> None:
        chapter = "<html><body><h1>One</h1><div><p>Body of chapter one.</p></div></body></html>"
        with respx.mock(base_url=NOVELS) as mock:
            mock.get("/c/1").mock(return_value=httpx.Response(200, text=chapter))
            mock.get("/c/2").mock(return_value=httpx.Response(404))

            response = await api_client.post(
                "/api/chapters-batch",
                json={
                    "chapters": [
                        {"url": "http://novels.example/c/1", "title": "One"},
                        {"url": "http://novels.example/c/2", "title": "Two"},
                    ],
                    "userAgent": "EpubBot/2.0",
                },
            )

        assert response.status_code == 200
        results = response.json()["results"]
        assert [r["status"] for r in results] == ["success", "failed"]
        assert results[0]["title"] == "One"
        assert "Body of chapter one." in results[0]["content"]
        assert "error" in results[1]
        assert "content" not in results[1]


# ---------------------------------------------------------------------------
# GET /api/proxy-image
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
class TestProxyImage:
    async def test_missing_url(self, api_client: AsyncClient) -> None:
        response = await api_client.get("/api/proxy-image")

        assert response.status_code == 400
        assert response.json() == {"error": "URL required"}

    async def test_non_http_scheme(self, api_client: AsyncClient, fake_dns) -> None:
        response = await api_client.get("/api/proxy-image", params={"url": "file:///etc/passwd"})

        assert response.status_code == 400
        assert fake_dns.calls == []

    async def test_private_target_forbidden(self, api_client: AsyncClient) -> None:
        response = await api_client.get(
            "/api/proxy-image", params={"url": "http://internal.example/latest/meta-data"}
        )

        assert response.status_code == 403
        assert response.json() == {"error": "Access to this resource is forbidden"}

    async def test_redirect_into_private_target_forbidden(self, api_client: AsyncClient) -> None:
        with respx.mock(base_url=IMAGES) as mock:
            mock.get("/cover.png").mock(
                return_value=httpx.Response(302, headers={"Location": "http://internal.example/x"})
            )

            response = await api_client.get(
                "/api/proxy-image", params={"url": "http://images.example/cover.png"}
            )

        assert response.status_code == 403

    async def test_redirect_to_non_http_scheme_is_bad_request(
        self, api_client: AsyncClient
    ) -> None:
        with respx.mock(base_url=IMAGES) as mock:
            mock.get("/cover.png").mock(
                return_value=httpx.Response(302, headers={"Location": "ftp://images.example/x.png"})
            )

            response = await api_client.get(
                "/api/proxy-image", params={"url": "http://images.example/cover.png"}
            )

        assert response.status_code == 400
        assert response.json() == {"error": "Invalid protocol: ftp"}

    async def test_oversized_image(
        self, api_client: AsyncClient, services: EngineServices
    ) -> None:
        services.fetcher.max_bytes = 16
        with respx.mock(base_url=IMAGES) as mock:
            mock.get("/huge.png").mock(return_value=httpx.Response(200, content=b"x" * 64))

            response = await api_client.get(
                "/api/proxy-image", params={"url": "http://images.example/huge.png"}
            )

        assert response.status_code == 413
        assert response.json() == {"error": "Image too large"}

    async def test_upstream_failure(self, api_client: AsyncClient) -> None:
        with respx.mock(base_url=IMAGES) as mock:
            mock.get("/gone.png").mock(return_value=httpx.Response(410))

            response = await api_client.get(
                "/api/proxy-image", params={"url": "http://images.example/gone.png"}
            )

        assert response.status_code == 500
        assert response.json() == {"error": "Failed to fetch image"}

    async def test_image_bytes_and_content_type(self, api_client: AsyncClient) -> None:
        png = b"\x89PNG\r\n\x1a\nrest"
        with respx.mock(base_url=IMAGES) as mock:
            mock.get("/cover.png").mock(
                return_value=httpx.Response(200, content=png, headers={"Content-Type": "image/png"})
            )

            response = await api_client.get(
                "/api/proxy-image", params={"url": "http://images.example/cover.png"}
            )

        assert response.status_code == 200
        assert response.content == png
        assert response.headers["content-type"] == "image/png"

    async def test_default_content_type(self, api_client: AsyncClient) -> None:
        with respx.mock(base_url=IMAGES) as mock:
            mock.get("/raw").mock(return_value=httpx.Response(200, content=b"\xff\xd8\xff"))

            response = await api_client.get(
                "/api/proxy-image", params={"url": "http://images.example/raw"}
            )

        assert response.status_code == 200
        assert response.headers["content-type"] == "image/jpeg"


# ---------------------------------------------------------------------------
# GET /api/jobs/{job_id}/events (SSE)
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
class TestEventStream:
    async def test_stream_ends_after_terminal_event(
        self, api_client: AsyncClient, services: EngineServices
    ) -> None:
        broadcaster = services.broadcaster
        request = asyncio.create_task(api_client.get("/api/jobs/job-sse/events"))

        for _ in range(200):
            if broadcaster.subscriber_count("job-sse"):
                break
            await asyncio.sleep(0.01)
        assert broadcaster.subscriber_count("job-sse") == 1

        broadcaster.publish("job-sse", "progress", {"message": "Fetching"})
        broadcaster.publish("job-sse", "complete", {"novel": {"title": "T"}})
        broadcaster.publish("job-sse", "progress", {"message": "after the end"})
        response = await asyncio.wait_for(request, timeout=5)

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        assert 'event: progress\ndata: {"message": "Fetching"}\n\n' in response.text
        assert 'event: complete\ndata: {"novel": {"title": "T"}}\n\n' in response.text
        assert "after the end" not in response.text
        assert broadcaster.subscriber_count("job-sse") == 0


# ---------------------------------------------------------------------------
# WS /ws
# ---------------------------------------------------------------------------


async def _scripted_analyzer(url: str, reporter: JobReporter) -> dict[str, Any]:
    reporter.progress("Fetching table of contents")
    await asyncio.sleep(0)
    return {"novel": {"title": "Socket Novel", "url": url, "chapters": []}}


class TestWebSocket:
    def test_join_then_receive_job_events(self, settings, fake_dns) -> None:
        app = create_app(
            settings,
            services=build_services(settings, lookup=fake_dns, analyzer=_scripted_analyzer),
        )

        with TestClient(app) as client:
            with client.websocket_connect("/ws") as ws:
                ws.send_json({"action": "join", "jobId": "job-ws"})
                assert ws.receive_json() == {
                    "event": "joined",
                    "jobId": "job-ws",
                    "data": {"jobId": "job-ws"},
                }

                response = client.post(
                    "/api/novel-info",
                    json={"url": "http://novels.example/book", "jobId": "job-ws"},
                )
                assert response.status_code == 200

                progress = ws.receive_json()
                complete = ws.receive_json()

        assert progress == {
            "event": "progress",
            "jobId": "job-ws",
            "data": {"message": "Fetching table of contents"},
        }
        assert complete["event"] == "complete"
        assert complete["data"]["novel"]["title"] == "Socket Novel"

    def test_malformed_message_gets_protocol_error(self, settings, fake_dns) -> None:
        app = create_app(settings, services=build_services(settings, lookup=fake_dns))

        with TestClient(app) as client:
            with client.websocket_connect("/ws") as ws:
                ws.send_text("not json")
                reply = ws.receive_json()
                ws.send_json({"action": "dance", "jobId": "job-x"})
                unknown = ws.receive_json()

        assert reply["event"] == "protocol-error"
        assert unknown["event"] == "protocol-error"
        assert "dance" in unknown["data"]["message"]
