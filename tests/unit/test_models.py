"""
Unit tests for the knowledge point model and its wire format.
"""

from datetime import UTC, datetime

import pytest

from linker.core.models import (
    LOCAL_ONLY_SENTINEL,
    CompositeKnowledgePointID,
    KnowledgePoint,
    Origin,
    parse_datetime,
)


class TestCompositeKnowledgePointID:
    def test_string_form(self):
        assert str(CompositeKnowledgePointID(3, 17)) == "3:17"
        assert CompositeKnowledgePointID(3, 17).string_representation == "3:17"

    def test_structural_equality(self):
        assert CompositeKnowledgePointID(3, 17) == CompositeKnowledgePointID(3, 17)
        assert len({CompositeKnowledgePointID(3, 17), CompositeKnowledgePointID(3, 17)}) == 1

    def test_parse(self):
        assert CompositeKnowledgePointID.parse("3:17") == CompositeKnowledgePointID(3, 17)

    @pytest.mark.parametrize("value", ["317", "a:b", ""])
    def test_parse_rejects_garbage(self, value):
        with pytest.raises(ValueError):
            CompositeKnowledgePointID.parse(value)

    def test_wire_object(self):
        composite = CompositeKnowledgePointID(3, 17)
        assert composite.to_dict() == {"user_id": 3, "sequence_id": 17}
        assert CompositeKnowledgePointID.from_dict({"user_id": 3, "sequence_id": 17}) == composite

    def test_legacy_global_id_maps_to_owner_one(self):
        assert CompositeKnowledgePointID.from_legacy_global_id(42) == CompositeKnowledgePointID(1, 42)


class TestFromDict:
    """Decoding server, cache and legacy guest payloads."""

    def test_server_payload_is_remote(self):
        point = KnowledgePoint.from_dict({
            "composite_id": {"user_id": 3, "sequence_id": 17},
            "legacy_id": 42,
            "category": "verb",
            "subcategory": "tense",
            "correct_phrase": "went",
            "mastery_level": 2.5,
            "next_review_date": "2024-03-02T08:00:00Z",
        })
        assert point.composite_id == CompositeKnowledgePointID(3, 17)
        assert point.legacy_id == 42
        assert point.origin is Origin.REMOTE
        assert point.next_review_date == datetime(2024, 3, 2, 8, 0, tzinfo=UTC)

    def test_ancient_id_from_id_key(self):
        point = KnowledgePoint.from_dict({"id": 9, "category": "c", "correct_phrase": "p"})
        assert point.ancient_id == 9
        assert point.origin is Origin.REMOTE

    def test_sentinel_marks_local_and_is_stripped(self):
        point = KnowledgePoint.from_dict({
            "id": -1700000000,
            "category": "c",
            "correct_phrase": "p",
            "ai_review_notes": LOCAL_ONLY_SENTINEL,
        })
        assert point.origin is Origin.LOCAL
        assert point.ai_review_notes is None
        assert point.ancient_id is None

    def test_negative_id_alone_marks_local(self):
        point = KnowledgePoint.from_dict({"id": -5, "category": "c", "correct_phrase": "p"})
        assert point.is_local_only
        assert point.ancient_id is None

    def test_string_id_carries_no_identity(self):
        point = KnowledgePoint.from_dict({"id": "0b6e", "category": "c", "correct_phrase": "p"})
        assert point.ancient_id is None
        assert point.origin is Origin.LOCAL

    def test_explicit_origin_wins(self):
        point = KnowledgePoint.from_dict(
            {"legacy_id": 4, "category": "c", "correct_phrase": "p", "origin": "local"}
        )
        assert point.origin is Origin.LOCAL

    def test_unknown_keys_kept_in_extra(self):
        point = KnowledgePoint.from_dict({"category": "c", "correct_phrase": "p", "tags": ["x"]})
        assert point.extra == {"tags": ["x"]}

    def test_round_trip_with_origin(self):
        point = KnowledgePoint(
            category="c",
            subcategory="s",
            correct_phrase="p",
            legacy_id=3,
            mastery_level=1.5,
            next_review_date=datetime(2024, 3, 2, tzinfo=UTC),
            origin=Origin.REMOTE,
        )
        assert KnowledgePoint.from_dict(point.to_dict(include_origin=True)) == point


class TestPromotion:
    def test_promoted_sets_identity_and_origin(self):
        point = KnowledgePoint(
            category="c", subcategory="s", correct_phrase="p", ai_review_notes=LOCAL_ONLY_SENTINEL
        )
        promoted = point.promoted(CompositeKnowledgePointID(7, 1))
        assert promoted.composite_id == CompositeKnowledgePointID(7, 1)
        assert promoted.origin is Origin.REMOTE
        assert promoted.ai_review_notes is None
        assert point.is_local_only  # original untouched

    def test_numeric_id_prefers_composite_sequence(self):
        point = KnowledgePoint(
            category="c",
            subcategory="s",
            correct_phrase="p",
            composite_id=CompositeKnowledgePointID(7, 11),
            legacy_id=3,
        )
        assert point.numeric_id == 11


class TestParseDatetime:
    def test_date_only_is_utc_midnight(self):
        assert parse_datetime("2024-03-02") == datetime(2024, 3, 2, tzinfo=UTC)

    def test_naive_is_utc(self):
        assert parse_datetime("2024-03-02T10:00:00") == datetime(2024, 3, 2, 10, tzinfo=UTC)

    def test_empty_is_none(self):
        assert parse_datetime("") is None
        assert parse_datetime(None) is None
