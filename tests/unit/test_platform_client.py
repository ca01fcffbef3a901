"""
Unit tests for the remote store HTTP client.

Requests are answered by an httpx.MockTransport so paths, payloads and
error mapping can be checked without a server.
"""

import json

import httpx
import pytest
import pytest_asyncio

from linker.core.errors import RemoteRejected, RemoteUnreachable
from linker.core.models import CompositeKnowledgePointID, Origin
from linker.sync.platform_client import PlatformClient, build_finalize_payload


class Recorder:
    """Mock transport handler that records requests and replays canned responses."""

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.responses: dict[tuple[str, str], httpx.Response] = {}
        self.error: Exception | None = None

    def reply(self, method: str, path: str, status_code: int = 200, json_body=None):
        self.responses[(method, path)] = httpx.Response(status_code, json=json_body)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return self.responses.get(
            (request.method, request.url.path), httpx.Response(200, json={"success": True})
        )


@pytest.fixture
def recorder():
    return Recorder()


@pytest_asyncio.fixture
async def client(recorder):
    """Authenticated client on a mock transport."""
    client = PlatformClient(
        "http://backend.test",
        token="secret-token",
        transport=httpx.MockTransport(recorder),
    )
    yield client
    await client.close()


class TestAuthentication:
    @pytest.mark.asyncio
    async def test_bearer_header(self, client, recorder):
        await client.fetch_active()
        assert recorder.requests[0].headers["Authorization"] == "Bearer secret-token"

    @pytest.mark.asyncio
    async def test_clear_token(self, client, recorder):
        await client.fetch_active()
        client.clear_token()
        assert not client.authenticated
        await client.fetch_active()
        assert "Authorization" not in recorder.requests[1].headers

    def test_guest_client(self):
        assert not PlatformClient("http://backend.test").authenticated

    def test_empty_token_is_guest(self):
        assert not PlatformClient("http://backend.test", token="").authenticated


class TestFetch:
    @pytest.mark.asyncio
    async def test_fetch_active_parses_points(self, client, recorder):
        recorder.reply("GET", "/api/data/get_dashboard", json_body={
            "knowledge_points": [
                {
                    "composite_id": {"user_id": 7, "sequence_id": 3},
                    "category": "verb",
                    "subcategory": "tense",
                    "correct_phrase": "went",
                    "mastery_level": 2.0,
                },
                {"id": 12, "category": "noun", "subcategory": "plural", "correct_phrase": "mice"},
            ]
        })
        points = await client.fetch_active()

        assert [p.composite_id for p in points] == [CompositeKnowledgePointID(7, 3), None]
        assert points[1].ancient_id == 12
        assert all(p.origin is Origin.REMOTE for p in points)

    @pytest.mark.asyncio
    async def test_fetch_archived_marks_archived(self, client, recorder):
        recorder.reply("GET", "/api/data/archived_knowledge_points", json_body=[
            {"legacy_id": 4, "category": "c", "subcategory": "s", "correct_phrase": "p"},
        ])
        points = await client.fetch_archived()
        assert points[0].is_archived
        assert points[0].legacy_id == 4

    @pytest.mark.asyncio
    async def test_unreadable_records_skipped(self, client, recorder):
        recorder.reply("GET", "/api/data/get_dashboard", json_body={
            "knowledge_points": [
                {"legacy_id": 1, "category": "c", "correct_phrase": "bad date", "next_review_date": "soon"},
                {"composite_id": {"user_id": 7}, "category": "c", "correct_phrase": "half an ID"},
                "not a record",
                {"legacy_id": 2, "category": "c", "correct_phrase": "fine"},
            ]
        })
        points = await client.fetch_active()
        assert [p.correct_phrase for p in points] == ["fine"]


class TestMutations:
    @pytest.mark.asyncio
    async def test_archive_composite_path(self, client, recorder):
        await client.archive(CompositeKnowledgePointID(7, 3))
        request = recorder.requests[0]
        assert request.method == "POST"
        assert request.url.path == "/api/v2/data/knowledge_point/7/3/archive"

    @pytest.mark.asyncio
    async def test_unarchive_legacy_path(self, client, recorder):
        await client.unarchive(42)
        assert recorder.requests[0].url.path == "/api/data/knowledge_point/42/unarchive"

    @pytest.mark.asyncio
    async def test_delete(self, client, recorder):
        await client.delete(CompositeKnowledgePointID(7, 3))
        assert recorder.requests[0].method == "DELETE"
        assert recorder.requests[0].url.path == "/api/v2/data/knowledge_point/7/3"

    @pytest.mark.asyncio
    async def test_update_mastery_payload(self, client, recorder, make_point, now):
        point = make_point(mastery_level=2.5, mistake_count=1, correct_count=3, next_review_date=now)
        await client.update_mastery(CompositeKnowledgePointID(7, 3), point)

        request = recorder.requests[0]
        assert request.method == "PUT"
        assert json.loads(request.content) == {
            "mastery_level": 2.5,
            "mistake_count": 1,
            "correct_count": 3,
            "next_review_date": now.isoformat(),
        }

    @pytest.mark.asyncio
    async def test_batch_action_splits_by_id_shape(self, client, recorder):
        await client.batch_action("archive", [CompositeKnowledgePointID(7, 3), 42])

        paths = [r.url.path for r in recorder.requests]
        assert paths == [
            "/api/v2/data/knowledge_points/batch_action",
            "/api/data/knowledge_points/batch_action",
        ]
        assert json.loads(recorder.requests[0].content)["composite_ids"] == [
            {"user_id": 7, "sequence_id": 3}
        ]
        assert json.loads(recorder.requests[1].content)["ids"] == [42]


class TestCreate:
    @pytest.mark.asyncio
    async def test_create_returns_composite_id(self, client, recorder, make_point):
        recorder.reply("POST", "/api/data/session/finalize", json_body={
            "success": True,
            "composite_id": {"user_id": 7, "sequence_id": 9},
        })
        composite = await client.create(make_point(mastery_level=1.5))

        assert composite == CompositeKnowledgePointID(7, 9)
        body = json.loads(recorder.requests[0].content)
        assert body["error_analyses"][0]["correction"] == "on the weekend"
        assert body["question_data"]["mastery_level"] == 1.5

    @pytest.mark.asyncio
    async def test_create_reads_nested_point(self, client, recorder, make_point):
        recorder.reply("POST", "/api/data/session/finalize", json_body={
            "knowledge_points": [{"composite_id": "7:10"}],
        })
        assert await client.create(make_point()) == CompositeKnowledgePointID(7, 10)

    @pytest.mark.asyncio
    async def test_create_without_id_is_rejected(self, client, recorder, make_point):
        recorder.reply("POST", "/api/data/session/finalize", json_body={"success": True})
        with pytest.raises(RemoteRejected):
            await client.create(make_point())

    def test_finalize_payload_uses_subcategory_code(self, make_point):
        payload = build_finalize_payload(make_point(subcategory="A1"))
        assert payload["error_analyses"][0]["error_type_code"] == "A1"
        assert payload["error_analyses"][0]["original_phrase"] == "in the weekend"


class TestErrorMapping:
    @pytest.mark.asyncio
    async def test_4xx_is_rejected(self, client, recorder):
        recorder.reply("DELETE", "/api/v2/data/knowledge_point/7/3", 404, {"error": "not found"})
        with pytest.raises(RemoteRejected) as exc_info:
            await client.delete(CompositeKnowledgePointID(7, 3))
        assert exc_info.value.status_code == 404
        assert exc_info.value.message == "not found"

    @pytest.mark.asyncio
    async def test_5xx_is_unreachable(self, client, recorder):
        recorder.reply("GET", "/api/data/get_dashboard", 503, {"message": "maintenance"})
        with pytest.raises(RemoteUnreachable):
            await client.fetch_active()

    @pytest.mark.asyncio
    async def test_transport_error_is_unreachable(self, client, recorder):
        recorder.error = httpx.ConnectError("connection refused")
        with pytest.raises(RemoteUnreachable):
            await client.fetch_active()

    @pytest.mark.asyncio
    async def test_health_check(self, client, recorder):
        assert await client.health_check()
        recorder.error = httpx.ConnectError("connection refused")
        assert not await client.health_check()
