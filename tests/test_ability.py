"""Tests for the ability mapping job and the ability rollup."""

import pytest

from gradetags.models.db import (
    AbilityAggregate,
    AbilityDictionaryEntry,
    DictionaryStatus,
    MappingSource,
    TagAbilityMapping,
    TagDictionaryEntry,
)
from gradetags.taxonomy.ability import AbilityMappingJob, AbilityRollup
from gradetags.taxonomy.config import PipelineConfig
from gradetags.taxonomy.normalize import normalize_ability_label

OWNER = "teacher-1"
LABELS = ["計算錯誤", "單位遺漏", "符號錯誤", "公式錯誤", "圖形判讀"]

MAPPING_REPLY = {
    "abilities": [{"label": "運算能力"}],
    "mappings": [
        {"tag": "計算錯誤", "ability": "運算能力", "confidence": 0.5},
        {"tag": "單位遺漏", "ability": "觀念理解", "confidence": "0.9"},
        {"tag": "符號錯誤", "ability": "運算能力"},
        {"tag": "計算錯誤", "ability": "觀念理解", "confidence": 1},
        {"tag": "不存在", "ability": "運算能力"},
        {"tag": "公式錯誤"},
    ],
}


def _totals(session):
    return {
        row.ability.label: (row.total_count, row.assignment_count, row.domain_count)
        for row in session.query(AbilityAggregate).filter_by(owner_id=OWNER).all()
    }


@pytest.fixture
def course(factory):
    factory.assignment("hw-1", domain="algebra")
    factory.assignment("hw-2", domain="geometry")
    factory.dictionary(LABELS)
    factory.aggregates("hw-1", {"計算錯誤": 5, "單位遺漏": 2})
    factory.aggregates("hw-2", {"計算錯誤": 3, "符號錯誤": 1})


@pytest.fixture
def job(db_session, provider, config, clock):
    return AbilityMappingJob(db_session, provider, config, clock)


class TestAbilityMappingJob:
    def test_maps_tags_and_rolls_up(self, job, course, provider, db_session):
        provider.queue(MAPPING_REPLY)

        result = job.run(OWNER)
        db_session.commit()

        assert result.status == "mapped"
        assert result.details["mapped"] == 3
        assert result.details["abilities"] == 2
        assert result.details["aggregates"] == 2
        assert result.details["model"] == "fake-model"

        assert _totals(db_session) == {
            "運算能力": (5.0, 2, 2),
            "觀念理解": (1.8, 1, 1),
        }
        rows = db_session.query(AbilityAggregate).all()
        assert all(row.model == "fake-model" for row in rows)
        assert all(row.prompt_version == "v1.0" for row in rows)

    def test_prompt_ranks_tags_by_usage(self, job, course, provider):
        provider.queue(MAPPING_REPLY)

        job.run(OWNER)

        prompt = provider.prompts[0]
        assert "- 計算錯誤｜8｜2" in prompt
        assert prompt.index("計算錯誤｜8") < prompt.index("單位遺漏｜2")

    def test_tag_limit_restricts_mapped_tags(self, db_session, course, provider, clock):
        provider.queue(MAPPING_REPLY)
        job = AbilityMappingJob(
            db_session, provider, PipelineConfig(ability_tag_limit=2), clock
        )

        result = job.run(OWNER)
        db_session.commit()

        assert "符號錯誤" not in provider.prompts[0]
        assert result.details["mapped"] == 2

    def test_manual_pin_survives_remap(self, job, course, provider, factory, db_session):
        tags = {entry.label: entry for entry in db_session.query(TagDictionaryEntry).all()}
        concept = AbilityDictionaryEntry(
            owner_id=OWNER, label="觀念理解", normalized_label=normalize_ability_label("觀念理解")
        )
        db_session.add(concept)
        db_session.flush()
        db_session.add(
            TagAbilityMapping(
                owner_id=OWNER,
                tag_id=tags["計算錯誤"].id,
                ability_id=concept.id,
                confidence=1.0,
                source=MappingSource.MANUAL.value,
            )
        )
        db_session.commit()
        provider.queue(MAPPING_REPLY)

        job.run(OWNER)
        db_session.commit()

        mappings = (
            db_session.query(TagAbilityMapping)
            .filter_by(owner_id=OWNER, tag_id=tags["計算錯誤"].id)
            .all()
        )
        assert len(mappings) == 1
        assert mappings[0].source == MappingSource.MANUAL.value
        assert mappings[0].ability_id == concept.id
        assert "觀念理解" in provider.prompts[0]
        # 計算錯誤 now counts fully under the pinned ability
        assert _totals(db_session)["觀念理解"] == (9.8, 2, 2)

    def test_rerun_replaces_ai_mappings(self, job, course, provider, db_session):
        provider.queue(MAPPING_REPLY, MAPPING_REPLY)

        job.run(OWNER)
        db_session.commit()
        job.run(OWNER)
        db_session.commit()

        assert db_session.query(TagAbilityMapping).count() == 3
        assert db_session.query(AbilityDictionaryEntry).count() == 2

    def test_too_few_tags_skips(self, job, factory, provider):
        factory.dictionary(LABELS[:3])

        result = job.run(OWNER)

        assert result.status == "skipped"
        assert result.skipped == "insufficient_tags"
        assert provider.prompts == []


class TestAbilityRollup:
    def test_unmapped_tags_are_skipped(self, db_session, course, config, clock):
        assert AbilityRollup(db_session, config, clock).refresh(OWNER) == 0
        assert db_session.query(AbilityAggregate).count() == 0

    def test_missing_confidence_counts_fully(self, db_session, course, config, clock):
        tags = {entry.label: entry for entry in db_session.query(TagDictionaryEntry).all()}
        ability = AbilityDictionaryEntry(
            owner_id=OWNER, label="運算能力", normalized_label=normalize_ability_label("運算能力")
        )
        db_session.add(ability)
        db_session.flush()
        db_session.add(
            TagAbilityMapping(
                owner_id=OWNER, tag_id=tags["計算錯誤"].id, ability_id=ability.id, confidence=None
            )
        )
        db_session.commit()

        AbilityRollup(db_session, config, clock).refresh(OWNER)
        db_session.commit()

        assert _totals(db_session) == {"運算能力": (8.0, 2, 2)}

    @pytest.fixture
    def merged_pair(self, db_session, course):
        """單位遺漏 merged into 計算錯誤, each mapped to its own ability."""
        tags = {entry.label: entry for entry in db_session.query(TagDictionaryEntry).all()}
        duplicate = tags["單位遺漏"]
        duplicate.status = DictionaryStatus.MERGED.value
        duplicate.merged_to_tag_id = tags["計算錯誤"].id
        abilities = {
            label: AbilityDictionaryEntry(
                owner_id=OWNER, label=label, normalized_label=normalize_ability_label(label)
            )
            for label in ("運算能力", "觀念理解")
        }
        db_session.add_all(abilities.values())
        db_session.flush()
        return tags, abilities

    @pytest.mark.parametrize("duplicate_first", [True, False])
    def test_canonical_mapping_beats_merged_duplicate(
        self, db_session, merged_pair, config, clock, duplicate_first
    ):
        tags, abilities = merged_pair
        mappings = [
            TagAbilityMapping(
                owner_id=OWNER,
                tag_id=tags["單位遺漏"].id,
                ability_id=abilities["觀念理解"].id,
                confidence=1.0,
            ),
            TagAbilityMapping(
                owner_id=OWNER,
                tag_id=tags["計算錯誤"].id,
                ability_id=abilities["運算能力"].id,
                confidence=1.0,
            ),
        ]
        if not duplicate_first:
            mappings.reverse()
        for mapping in mappings:
            db_session.add(mapping)
            db_session.flush()
        db_session.commit()

        AbilityRollup(db_session, config, clock).refresh(OWNER)
        db_session.commit()

        # 單位遺漏 counts under its canonical, so its 2 lands on 運算能力 too
        assert _totals(db_session) == {"運算能力": (10.0, 2, 2)}

    def test_manual_pin_on_duplicate_beats_model_mapping(
        self, db_session, merged_pair, config, clock
    ):
        tags, abilities = merged_pair
        db_session.add_all(
            [
                TagAbilityMapping(
                    owner_id=OWNER,
                    tag_id=tags["計算錯誤"].id,
                    ability_id=abilities["運算能力"].id,
                    confidence=1.0,
                ),
                TagAbilityMapping(
                    owner_id=OWNER,
                    tag_id=tags["單位遺漏"].id,
                    ability_id=abilities["觀念理解"].id,
                    confidence=0.5,
                    source=MappingSource.MANUAL.value,
                ),
            ]
        )
        db_session.commit()

        AbilityRollup(db_session, config, clock).refresh(OWNER)
        db_session.commit()

        assert _totals(db_session) == {"觀念理解": (5.0, 2, 2)}
