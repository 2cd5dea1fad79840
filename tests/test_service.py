"""Tests for the taxonomy service: touch hook, overrides, curation and pins."""

import uuid
from unittest.mock import patch

import pytest

from gradetags.exceptions import InvalidRequestError, NotFoundError
from gradetags.models.db import (
    AbilityAggregate,
    AssignmentTagAggregate,
    AssignmentTagState,
    AssignmentTagStatus,
    DictionaryStatus,
    DomainTagAggregate,
    MappingSource,
    MergeStateStatus,
    TagDictionaryEntry,
    TagDictionaryMergeState,
)
from gradetags.taxonomy.orchestrator import PipelineOrchestrator, SweepRequest
from gradetags.taxonomy.service import TaxonomyService

OWNER = "teacher-1"


@pytest.fixture
def service(db_session, config, clock):
    return TaxonomyService(db_session, config, clock)


def _state(session, assignment_id="hw-1"):
    session.expire_all()
    return session.get(AssignmentTagState, (OWNER, assignment_id))


def _entries(session):
    session.expire_all()
    return {entry.label: entry for entry in session.query(TagDictionaryEntry).all()}


class TestRecordGraded:
    def test_touches_each_assignment_once(self, service, db_session):
        touched = service.record_graded(OWNER, ["hw-1", " hw-1 ", "", None, "hw-2"])

        assert touched == 2
        for assignment_id in ("hw-1", "hw-2"):
            state = _state(db_session, assignment_id)
            assert state.status == AssignmentTagStatus.PENDING.value
            assert state.dirty is True

    def test_failure_is_swallowed(self, service, db_session):
        with patch(
            "gradetags.taxonomy.service.record_grading_event",
            side_effect=RuntimeError("database unavailable"),
        ):
            touched = service.record_graded(OWNER, ["hw-1"])

        assert touched == 0
        assert db_session.query(AssignmentTagState).count() == 0


class TestManualOverride:
    def test_override_pins_assignment(self, service, factory, clock, provider, config, db_session):
        factory.assignment("hw-1", domain="algebra")

        result = service.apply_override(OWNER, "hw-1", [{"label": "計算錯誤", "count": 12}])

        assert result["status"] == AssignmentTagStatus.READY.value
        assert result["manual_locked"] is True
        assert result["new_labels"] == 1
        assert result["domain"] == "algebra"
        assert result["domain_refreshed"] is True

        rows = db_session.query(AssignmentTagAggregate).all()
        assert [(row.tag_label, row.tag_count, row.model) for row in rows] == [
            ("計算錯誤", 12, "manual")
        ]
        domain_rows = db_session.query(DomainTagAggregate).all()
        assert [(row.domain, row.tag_label, row.tag_count) for row in domain_rows] == [
            ("algebra", "計算錯誤", 12)
        ]
        merge_state = db_session.get(TagDictionaryMergeState, OWNER)
        assert merge_state.status == MergeStateStatus.PENDING.value

        # A later grading event must not move a locked assignment out of ready
        clock.advance(minutes=1)
        service.record_graded(OWNER, ["hw-1"])
        state = _state(db_session)
        assert state.status == AssignmentTagStatus.READY.value
        assert state.manual_locked is True

        clock.advance(minutes=60)
        report = PipelineOrchestrator(db_session, provider, config, clock).sweep(
            SweepRequest(force=True)
        )
        assert report.processed == 0

    def test_replaces_previous_aggregates(self, service, factory, db_session):
        factory.aggregates("hw-1", {"old tag": 5, "other": 1})

        service.apply_override(OWNER, "hw-1", [{"label": "計算錯誤", "count": 12}])

        labels = [row.tag_label for row in db_session.query(AssignmentTagAggregate).all()]
        assert labels == ["計算錯誤"]

    def test_cleans_entries(self, service, db_session):
        result = service.apply_override(
            OWNER,
            "hw-1",
            [
                {"tag": "單位遺漏", "count": "3", "examples": ["a", " ", "b", "c"]},
                {"label": "單位 遺漏", "count": 9},
                {"label": "zero", "count": 0},
                {"label": "", "count": 4},
                "not a dict",
            ],
        )

        assert result["tags"] == [{"label": "單位遺漏", "count": 3, "examples": ["a", "b"]}]
        row = db_session.query(AssignmentTagAggregate).one()
        assert row.examples == ["a", "b"]

    def test_known_label_is_not_new(self, service, factory, db_session):
        factory.dictionary(["計算錯誤"])

        result = service.apply_override(OWNER, "hw-1", [{"label": "計算錯誤", "count": 2}])

        assert result["new_labels"] == 0
        assert db_session.get(TagDictionaryMergeState, OWNER) is None

    def test_unlocked_override(self, service, db_session):
        result = service.apply_override(
            OWNER, "hw-1", [{"label": "計算錯誤", "count": 2}], locked=False
        )
        assert result["manual_locked"] is False

        service.record_graded(OWNER, ["hw-1"])

        assert _state(db_session).status == AssignmentTagStatus.PENDING.value

    @pytest.mark.parametrize(
        "tags", [[], [{"label": "計算錯誤", "count": 0}], [{"count": 3}], None]
    )
    def test_no_usable_tag_is_rejected(self, service, db_session, tags):
        with pytest.raises(InvalidRequestError):
            service.apply_override(OWNER, "hw-1", tags)

        assert db_session.query(AssignmentTagState).count() == 0
        assert db_session.query(AssignmentTagAggregate).count() == 0

    def test_missing_ids_are_rejected(self, service):
        with pytest.raises(InvalidRequestError):
            service.apply_override(OWNER, "  ", [{"label": "計算錯誤", "count": 2}])
        with pytest.raises(InvalidRequestError):
            service.apply_override("", "hw-1", [{"label": "計算錯誤", "count": 2}])


class TestUnlock:
    def test_unlock_keeps_status(self, service, db_session):
        service.apply_override(OWNER, "hw-1", [{"label": "計算錯誤", "count": 2}])

        result = service.unlock(OWNER, "hw-1")

        assert result["manual_locked"] is False
        assert result["status"] == AssignmentTagStatus.READY.value

        service.record_graded(OWNER, ["hw-1"])
        assert _state(db_session).status == AssignmentTagStatus.PENDING.value

    def test_unknown_state(self, service):
        with pytest.raises(NotFoundError):
            service.unlock(OWNER, "missing")


class TestOverview:
    def test_usage_folds_merged_entries(self, service, factory, db_session):
        factory.assignment("hw-1", domain="algebra", title="Fractions")
        factory.state("hw-1", status=AssignmentTagStatus.READY.value, sample_count=6)
        canonical, duplicate, _ = factory.dictionary(["計算錯誤", "計算失誤", "單位遺漏"])
        duplicate.status = DictionaryStatus.MERGED.value
        duplicate.merged_to_tag_id = canonical.id
        db_session.commit()
        factory.aggregates("hw-1", {"計算錯誤": 3, "計算失誤": 2})
        factory.aggregates("hw-2", {"計算錯誤": 1}, model="manual")

        overview = service.overview(OWNER)

        dictionary = {entry["label"]: entry for entry in overview["dictionary"]}
        assert dictionary["計算錯誤"]["total_count"] == 6
        assert dictionary["計算錯誤"]["usage_count"] == 2
        assert dictionary["計算失誤"]["total_count"] == 0
        assert dictionary["計算失誤"]["merged_to_label"] == "計算錯誤"
        assert dictionary["單位遺漏"]["usage_count"] == 0

        assert [state["assignment_id"] for state in overview["assignments"]] == ["hw-1"]
        assert overview["assignments"][0]["title"] == "Fractions"
        assert overview["assignments"][0]["domain"] == "algebra"
        assert overview["aggregates"]["hw-2"][0]["source"] == "manual"
        assert {row["source"] for row in overview["aggregates"]["hw-1"]} == {"ai"}

    def test_filter_by_assignment(self, service, factory):
        factory.state("hw-1", status=AssignmentTagStatus.READY.value)
        factory.state("hw-2", status=AssignmentTagStatus.READY.value)
        factory.aggregates("hw-1", {"計算錯誤": 3})
        factory.aggregates("hw-2", {"計算錯誤": 1})

        overview = service.overview(OWNER, assignment_id="hw-2")

        assert [state["assignment_id"] for state in overview["assignments"]] == ["hw-2"]
        assert list(overview["aggregates"]) == ["hw-2"]


class TestUpdateDictionaryEntry:
    @pytest.fixture
    def entries(self, factory):
        return {
            entry.label: entry.id
            for entry in factory.dictionary(["計算錯誤", "計算失誤", "單位遺漏"])
        }

    def test_rename(self, service, entries, db_session):
        result = service.update_dictionary_entry(OWNER, entries["計算失誤"], label=" 計算 失誤 ")

        assert result["label"] == "計算 失誤"
        assert result["normalized_label"] == "計算失誤"

    def test_rename_onto_active_label_is_rejected(self, service, entries):
        with pytest.raises(InvalidRequestError):
            service.update_dictionary_entry(OWNER, entries["計算失誤"], label="計算錯誤")

    def test_merge_repoints_followers(self, service, entries, db_session):
        service.update_dictionary_entry(
            OWNER, entries["單位遺漏"], merged_to_tag_id=entries["計算失誤"]
        )

        result = service.update_dictionary_entry(
            OWNER, entries["計算失誤"], merged_to_tag_id=entries["計算錯誤"]
        )

        assert result["status"] == DictionaryStatus.MERGED.value
        assert result["merged_to_label"] == "計算錯誤"
        current = _entries(db_session)
        assert current["單位遺漏"].merged_to_tag_id == entries["計算錯誤"]

    def test_merge_target_must_be_active_other_entry(self, service, entries):
        with pytest.raises(InvalidRequestError):
            service.update_dictionary_entry(
                OWNER, entries["計算失誤"], merged_to_tag_id=entries["計算失誤"]
            )

        service.update_dictionary_entry(
            OWNER, entries["單位遺漏"], merged_to_tag_id=entries["計算錯誤"]
        )
        with pytest.raises(InvalidRequestError):
            service.update_dictionary_entry(
                OWNER, entries["計算失誤"], merged_to_tag_id=entries["單位遺漏"]
            )

    def test_merged_status_needs_target(self, service, entries):
        with pytest.raises(InvalidRequestError):
            service.update_dictionary_entry(OWNER, entries["計算失誤"], status="merged")

    def test_reactivate_clears_pointer(self, service, entries):
        service.update_dictionary_entry(
            OWNER, entries["計算失誤"], merged_to_tag_id=entries["計算錯誤"]
        )

        result = service.update_dictionary_entry(OWNER, entries["計算失誤"], clear_merge=True)

        assert result["status"] == DictionaryStatus.ACTIVE.value
        assert result["merged_to_tag_id"] is None

    def test_reactivate_with_clashing_label_is_rejected(self, service, entries, factory):
        service.update_dictionary_entry(
            OWNER, entries["計算失誤"], merged_to_tag_id=entries["計算錯誤"]
        )
        service.update_dictionary_entry(OWNER, entries["計算失誤"], label="Calc")
        factory.dictionary(["calc"])

        with pytest.raises(InvalidRequestError):
            service.update_dictionary_entry(OWNER, entries["計算失誤"], status="active")

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"status": "deleted"},
            {"label": "   "},
            {"merged_to_tag_id": uuid.uuid4(), "clear_merge": True},
            {"merged_to_tag_id": uuid.uuid4(), "status": "active"},
        ],
    )
    def test_invalid_requests(self, service, entries, kwargs):
        with pytest.raises(InvalidRequestError):
            service.update_dictionary_entry(OWNER, entries["計算失誤"], **kwargs)

    def test_unknown_entries(self, service, entries):
        with pytest.raises(NotFoundError):
            service.update_dictionary_entry(OWNER, uuid.uuid4(), label="x")
        with pytest.raises(NotFoundError):
            service.update_dictionary_entry(
                OWNER, entries["計算失誤"], merged_to_tag_id=uuid.uuid4()
            )

    def test_other_owner_cannot_edit(self, service, entries):
        with pytest.raises(NotFoundError):
            service.update_dictionary_entry("teacher-2", entries["計算失誤"], label="x")


class TestManualAbilityMapping:
    def test_pin_by_label_creates_ability(self, service, factory, db_session):
        tag = factory.dictionary(["計算錯誤"])[0]
        factory.aggregates("hw-1", {"計算錯誤": 4})

        result = service.set_manual_mapping(OWNER, tag.id, ability_label="運算能力")

        assert result["source"] == MappingSource.MANUAL.value
        assert result["confidence"] == 1.0
        assert result["ability_label"] == "運算能力"
        rows = db_session.query(AbilityAggregate).all()
        assert [(row.ability.label, row.total_count) for row in rows] == [("運算能力", 4.0)]

        overview = service.ability_rollups(OWNER)
        assert overview["abilities"][0]["label"] == "運算能力"
        assert overview["mappings"][0]["tag_label"] == "計算錯誤"

    def test_repin_moves_tag(self, service, factory, db_session):
        tag = factory.dictionary(["計算錯誤"])[0]
        first = service.set_manual_mapping(OWNER, tag.id, ability_label="運算能力")

        service.set_manual_mapping(OWNER, tag.id, ability_label="觀念理解")
        again = service.set_manual_mapping(OWNER, tag.id, ability_id=first["ability_id"])

        assert again["ability_label"] == "運算能力"
        assert len(service.ability_rollups(OWNER)["mappings"]) == 1

    def test_rejects_merged_tag(self, service, factory, db_session):
        canonical, duplicate = factory.dictionary(["計算錯誤", "計算失誤"])
        duplicate.status = DictionaryStatus.MERGED.value
        duplicate.merged_to_tag_id = canonical.id
        db_session.commit()

        with pytest.raises(InvalidRequestError):
            service.set_manual_mapping(OWNER, duplicate.id, ability_label="運算能力")

    def test_unknown_references(self, service, factory):
        tag = factory.dictionary(["計算錯誤"])[0]

        with pytest.raises(NotFoundError):
            service.set_manual_mapping(OWNER, uuid.uuid4(), ability_label="運算能力")
        with pytest.raises(NotFoundError):
            service.set_manual_mapping(OWNER, tag.id, ability_id=uuid.uuid4())
        with pytest.raises(InvalidRequestError):
            service.set_manual_mapping(OWNER, tag.id)
