"""
Remote Store Client

HTTP client for the knowledge point backend, the authoritative store that
assigns composite IDs.

Usage:
    async with PlatformClient(settings.api_base_url, token=token) as client:
        points = await client.fetch_active()
        await client.archive(points[0].composite_id)

Errors are mapped onto the core taxonomy: transport failures and 5xx answers
raise RemoteUnreachable, 4xx answers raise RemoteRejected. Nothing here
retries; retry policy belongs to the caller.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any, Protocol

import httpx
from loguru import logger

from config import ApiConfig
from linker.core.errors import RemoteRejected, RemoteUnreachable
from linker.core.models import CompositeKnowledgePointID, KnowledgePoint, Origin, format_datetime

RemoteTarget = CompositeKnowledgePointID | int


class RemoteStore(Protocol):
    """What the repository and reconciliation need from the server."""

    @property
    def authenticated(self) -> bool: ...

    async def create(self, point: KnowledgePoint) -> CompositeKnowledgePointID: ...

    async def fetch_active(self) -> list[KnowledgePoint]: ...

    async def fetch_archived(self) -> list[KnowledgePoint]: ...

    async def archive(self, target: RemoteTarget) -> None: ...

    async def unarchive(self, target: RemoteTarget) -> None: ...

    async def delete(self, target: RemoteTarget) -> None: ...

    async def update_mastery(self, target: RemoteTarget, point: KnowledgePoint) -> None: ...

    async def batch_action(self, action: str, targets: list[RemoteTarget]) -> None: ...

    async def ai_review(self, target: RemoteTarget, model_name: str | None = None) -> dict[str, Any]: ...


def build_finalize_payload(point: KnowledgePoint) -> dict[str, Any]:
    """
    Finalize request for one knowledge point.

    Mirrors what the grading flow sends after a learner confirms the errors
    in an answer, so a promoted guest point looks like any other.
    """
    context = point.user_context_sentence or ""
    return {
        "error_analyses": [
            {
                "error_type_code": point.subcategory or "B",
                "category": point.category,
                "key_point_summary": point.key_point_summary or "",
                "original_phrase": point.incorrect_phrase_in_context or "",
                "correction": point.correct_phrase,
                "explanation": point.explanation or "",
                "severity": "medium",
            }
        ],
        "question_data": {
            "new_sentence": context,
            "type": "review",
            "hint_text": None,
            "knowledge_point_id": None,
            "mastery_level": point.mastery_level,
            "mistake_count": point.mistake_count,
            "correct_count": point.correct_count,
            "next_review_date": format_datetime(point.next_review_date),
        },
        "user_answer": context,
        "submitted_at": datetime.now(UTC).isoformat(),
    }


def _extract_composite_id(data: dict[str, Any]) -> CompositeKnowledgePointID | None:
    raw = data.get("composite_id")
    if raw is None:
        points = data.get("knowledge_points") or []
        if points and isinstance(points[0], dict):
            raw = points[0].get("composite_id")
    if raw is None:
        ids = data.get("composite_ids") or []
        raw = ids[0] if ids else None
    if isinstance(raw, dict):
        return CompositeKnowledgePointID.from_dict(raw)
    if isinstance(raw, str) and raw:
        return CompositeKnowledgePointID.parse(raw)
    return None


class PlatformClient:
    """
    HTTP client for the knowledge point backend.

    Supports:
    - Bearer token authentication handed over by the auth layer
    - Composite ID (v2) and legacy numeric ID endpoints
    - Finalize (create), list, archive, delete, mastery update
    """

    def __init__(
        self,
        base_url: str,
        api: ApiConfig | None = None,
        token: str | None = None,
        timeout_seconds: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """
        Initialize the client.

        Args:
            base_url: Backend root URL
            api: Endpoint layout (defaults to ApiConfig())
            token: Bearer token; None means guest mode
            timeout_seconds: Request timeout
            transport: Optional httpx transport (tests use MockTransport)
        """
        self.base_url = base_url.rstrip("/")
        self.api = api or ApiConfig()
        self.timeout_seconds = timeout_seconds
        self._token = token
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> PlatformClient:
        await self._ensure_client()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    async def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {"Content-Type": "application/json"}
            if self._token:
                headers["Authorization"] = f"Bearer {self._token}"

            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=headers,
                timeout=self.timeout_seconds,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    # =========================================================================
    # Authentication
    # =========================================================================

    @property
    def authenticated(self) -> bool:
        return bool(self._token)

    def set_token(self, token: str) -> None:
        """Adopt a token issued by the auth layer."""
        self._token = token
        if self._client is not None:
            self._client.headers["Authorization"] = f"Bearer {token}"

    def clear_token(self) -> None:
        self._token = None
        if self._client is not None:
            self._client.headers.pop("Authorization", None)

    # =========================================================================
    # Request plumbing
    # =========================================================================

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text or response.reason_phrase
        if isinstance(body, dict):
            for key in ("error", "message", "detail"):
                if body.get(key):
                    return str(body[key])
        return response.reason_phrase

    async def _request(
        self, method: str, path: str, json: dict[str, Any] | None = None
    ) -> httpx.Response:
        client = await self._ensure_client()
        try:
            response = await client.request(method, path, json=json)
        except httpx.RequestError as e:
            logger.warning(f"Connection error on {method} {path}: {e}")
            raise RemoteUnreachable(f"{method} {path} failed: {e}") from e

        if response.status_code >= 500:
            message = self._error_message(response)
            logger.warning(f"Server error on {method} {path}: {response.status_code} {message}")
            raise RemoteUnreachable(f"{method} {path} returned {response.status_code}: {message}")
        if response.status_code >= 400:
            message = self._error_message(response)
            logger.warning(f"Request rejected on {method} {path}: {response.status_code} {message}")
            raise RemoteRejected(response.status_code, message)
        return response

    @staticmethod
    def _json(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError as e:
            raise RemoteRejected(response.status_code, "Response was not JSON") from e

    def _point_path(self, target: RemoteTarget, action: str | None = None) -> str:
        if isinstance(target, CompositeKnowledgePointID):
            path = f"{self.api.knowledge_point_endpoint}/{target.owner_id}/{target.sequence_id}"
        else:
            path = f"{self.api.legacy_knowledge_point_endpoint}/{target}"
        return f"{path}/{action}" if action else path

    @staticmethod
    def _parse_points(data: Any) -> list[KnowledgePoint]:
        raw = data.get("knowledge_points", []) if isinstance(data, dict) else data
        points = []
        for item in raw or []:
            try:
                point = KnowledgePoint.from_dict(item)
            except (ValueError, TypeError, KeyError, AttributeError) as e:
                logger.warning(f"Skipping unreadable server record: {e}")
                continue
            # Anything the server returns is server-owned.
            points.append(point.with_changes(origin=Origin.REMOTE))
        return points

    # =========================================================================
    # Knowledge points
    # =========================================================================

    async def create(self, point: KnowledgePoint) -> CompositeKnowledgePointID:
        """
        Create a knowledge point through the finalize endpoint.

        Returns:
            Composite ID assigned by the server

        Raises:
            RemoteRejected: Validation failure, or no ID in the response
            RemoteUnreachable: Transport failure or server error
        """
        response = await self._request(
            "POST", self.api.finalize_endpoint, json=build_finalize_payload(point)
        )
        data = self._json(response)
        composite = _extract_composite_id(data if isinstance(data, dict) else {})
        if composite is None:
            raise RemoteRejected(response.status_code, "Finalize response carried no composite ID")

        logger.debug(f"Created knowledge point {composite} ({point.category})")
        return composite

    async def fetch_active(self) -> list[KnowledgePoint]:
        response = await self._request("GET", self.api.dashboard_endpoint)
        points = self._parse_points(self._json(response))
        logger.debug(f"Fetched {len(points)} active knowledge points")
        return points

    async def fetch_archived(self) -> list[KnowledgePoint]:
        response = await self._request("GET", self.api.archived_endpoint)
        points = [p.with_changes(is_archived=True) for p in self._parse_points(self._json(response))]
        logger.debug(f"Fetched {len(points)} archived knowledge points")
        return points

    async def archive(self, target: RemoteTarget) -> None:
        await self._request("POST", self._point_path(target, "archive"))

    async def unarchive(self, target: RemoteTarget) -> None:
        await self._request("POST", self._point_path(target, "unarchive"))

    async def delete(self, target: RemoteTarget) -> None:
        await self._request("DELETE", self._point_path(target))

    async def update_mastery(self, target: RemoteTarget, point: KnowledgePoint) -> None:
        """Push the score, counters and schedule of ``point``."""
        await self._request(
            "PUT",
            self._point_path(target),
            json={
                "mastery_level": point.mastery_level,
                "mistake_count": point.mistake_count,
                "correct_count": point.correct_count,
                "next_review_date": format_datetime(point.next_review_date),
            },
        )

    async def batch_action(self, action: str, targets: list[RemoteTarget]) -> None:
        """Apply ``action`` ("archive", "unarchive", "delete") to many points at once."""
        composite = [t.to_dict() for t in targets if isinstance(t, CompositeKnowledgePointID)]
        legacy = [t for t in targets if not isinstance(t, CompositeKnowledgePointID)]
        if composite:
            await self._request(
                "POST",
                self.api.batch_action_endpoint,
                json={"action": action, "composite_ids": composite},
            )
        if legacy:
            await self._request(
                "POST",
                self.api.batch_action_endpoint.replace("/v2", "", 1),
                json={"action": action, "ids": legacy},
            )

    async def ai_review(self, target: RemoteTarget, model_name: str | None = None) -> dict[str, Any]:
        response = await self._request(
            "POST", self._point_path(target, "ai_review"), json={"model_name": model_name}
        )
        return self._json(response)

    # =========================================================================
    # Health Check
    # =========================================================================

    async def health_check(self) -> bool:
        """Check if the backend is reachable."""
        try:
            await self._request("GET", self.api.health_endpoint)
            return True
        except (RemoteUnreachable, RemoteRejected):
            return False
