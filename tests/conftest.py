"""
Pytest Configuration and Fixtures.

This file configures pytest and provides shared fixtures for all tests.
"""
import sys
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import pytest

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from linker.core.errors import RemoteRejected  # noqa: E402
from linker.core.mastery import MasteryEngine  # noqa: E402
from linker.core.models import CompositeKnowledgePointID, KnowledgePoint, Origin  # noqa: E402
from linker.db.local_store import LocalStore  # noqa: E402


def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests (local store + fake backend)")
    config.addinivalue_line("markers", "smoke: Smoke tests for CLI commands")
    config.addinivalue_line("markers", "slow: Slow tests")


def pytest_collection_modifyitems(config, items):
    """Automatically mark tests based on their location."""
    for item in items:
        # Mark based on test file location
        if "unit" in str(item.fspath):
            item.add_marker(pytest.mark.unit)
        elif "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)
        elif "smoke" in str(item.fspath):
            item.add_marker(pytest.mark.smoke)


class FakeRemoteStore:
    """
    In-memory backend.

    Assigns composite IDs for ``owner_id`` in sequence. Set an exception in
    ``fail_on[operation]`` to make that operation raise it.
    """

    def __init__(self, owner_id: int = 7, authenticated: bool = True):
        self.owner_id = owner_id
        self.authenticated = authenticated
        self.points: dict[str, KnowledgePoint] = {}
        self.next_sequence = 1
        self.calls: list[str] = []
        self.fail_on: dict[str, Exception] = {}

    def _enter(self, operation: str) -> None:
        self.calls.append(operation)
        error = self.fail_on.get(operation)
        if error is not None:
            raise error

    def _get(self, target: Any) -> KnowledgePoint:
        key = str(target)
        if key not in self.points:
            raise RemoteRejected(404, f"Knowledge point {key} not found")
        return self.points[key]

    def seed(self, point: KnowledgePoint) -> KnowledgePoint:
        """Store ``point`` as if the server had created it earlier."""
        composite = CompositeKnowledgePointID(self.owner_id, self.next_sequence)
        self.next_sequence += 1
        stored = point.promoted(composite)
        self.points[str(composite)] = stored
        return stored

    async def create(self, point: KnowledgePoint) -> CompositeKnowledgePointID:
        self._enter("create")
        return self.seed(point).composite_id

    async def fetch_active(self) -> list[KnowledgePoint]:
        self._enter("fetch_active")
        return [p for p in self.points.values() if not p.is_archived]

    async def fetch_archived(self) -> list[KnowledgePoint]:
        self._enter("fetch_archived")
        return [p for p in self.points.values() if p.is_archived]

    async def archive(self, target: Any) -> None:
        self._enter("archive")
        self.points[str(target)] = self._get(target).with_changes(is_archived=True)

    async def unarchive(self, target: Any) -> None:
        self._enter("unarchive")
        self.points[str(target)] = self._get(target).with_changes(is_archived=False)

    async def delete(self, target: Any) -> None:
        self._enter("delete")
        self._get(target)
        del self.points[str(target)]

    async def update_mastery(self, target: Any, point: KnowledgePoint) -> None:
        self._enter("update_mastery")
        self.points[str(target)] = self._get(target).with_changes(
            mastery_level=point.mastery_level,
            mistake_count=point.mistake_count,
            correct_count=point.correct_count,
            next_review_date=point.next_review_date,
        )

    async def batch_action(self, action: str, targets: list[Any]) -> None:
        self._enter("batch_action")
        for target in targets:
            point = self._get(target)
            if action == "archive":
                self.points[str(target)] = point.with_changes(is_archived=True)
            elif action == "unarchive":
                self.points[str(target)] = point.with_changes(is_archived=False)
            elif action == "delete":
                del self.points[str(target)]

    async def ai_review(self, target: Any, model_name: str | None = None) -> dict[str, Any]:
        self._enter("ai_review")
        self._get(target)
        return {"ai_review_notes": "Mastered in context", "model_name": model_name}


@pytest.fixture(scope="session")
def project_root():
    """Return the project root directory."""
    return PROJECT_ROOT


@pytest.fixture
def now():
    """Fixed evaluation time."""
    return datetime(2024, 3, 1, 12, 0, tzinfo=UTC)


@pytest.fixture
def local_store(tmp_path):
    """Local store backed by a temporary SQLite file."""
    store = LocalStore(f"sqlite:///{tmp_path / 'linker_local.db'}")
    yield store
    store.close()


@pytest.fixture
def remote():
    """Authenticated in-memory backend."""
    return FakeRemoteStore()


@pytest.fixture
def engine():
    return MasteryEngine()


@pytest.fixture
def make_point():
    """Factory for knowledge points with sensible defaults."""

    def factory(correct_phrase: str = "on the weekend", **overrides: Any) -> KnowledgePoint:
        fields: dict[str, Any] = {
            "category": "preposition",
            "subcategory": "time",
            "correct_phrase": correct_phrase,
            "explanation": "Use 'on' with weekend in American English",
            "user_context_sentence": "I go hiking on the weekend.",
            "incorrect_phrase_in_context": "in the weekend",
            "origin": Origin.LOCAL,
        }
        fields.update(overrides)
        return KnowledgePoint(**fields)

    return factory
