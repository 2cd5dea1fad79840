"""Tests for the assignment clustering job."""

from unittest.mock import patch

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from gradetags.exceptions import ModelOutputError
from gradetags.models.db import (
    AssignmentTagAggregate,
    AssignmentTagState,
    AssignmentTagStatus,
    Base,
    TagDictionaryEntry,
)
from gradetags.taxonomy.clustering import ClusteringJob, normalize_tags
from gradetags.taxonomy.schemas import TagEntry
from gradetags.taxonomy.service import TaxonomyService
from gradetags.taxonomy.signals import Layer, LayerSignal

OWNER = "teacher-1"

SCENARIO_B_PHRASES = [
    "missing units",
    "missing units",
    "sign error",
    "wrong formula",
    "sign error",
    "sign error",
]


def _aggregates(session, assignment_id="hw-1"):
    return (
        session.query(AssignmentTagAggregate)
        .filter_by(owner_id=OWNER, assignment_id=assignment_id)
        .order_by(AssignmentTagAggregate.tag_count.desc(), AssignmentTagAggregate.tag_label)
        .all()
    )


@pytest.fixture
def job(db_session, provider, config, clock):
    return ClusteringJob(db_session, provider, config, clock)


@pytest.fixture
def scenario_b(factory):
    factory.assignment("hw-1", domain="physics")
    factory.graded("hw-1", [[phrase] for phrase in SCENARIO_B_PHRASES])
    factory.state("hw-1", status=AssignmentTagStatus.RUNNING.value)


class TestNormalizeTags:
    def test_filters_clamps_and_dedupes(self):
        entries = [
            TagEntry(label="sign error", count=9, examples=["a", "b", "c"]),
            TagEntry(tag="units", count="2 students"),
            TagEntry(label="Sign  Error", count=4),
            TagEntry(label="zero", count=0),
            TagEntry(label="", count=3),
            TagEntry(label=5, count=3),
            TagEntry(label="no count"),
        ]

        tags = normalize_tags(entries, sample_count=6, limit=8)

        assert [(tag.label, tag.count) for tag in tags] == [("sign error", 6), ("units", 2)]
        assert tags[0].examples == ["a", "b"]
        assert tags[1].examples is None

    def test_limit(self):
        entries = [TagEntry(label=f"tag {index}", count=index + 1) for index in range(12)]

        tags = normalize_tags(entries, sample_count=100, limit=8)

        assert len(tags) == 8
        assert tags[0].count == 12


class TestClusteringJob:
    def test_insufficient_samples_writes_nothing(self, job, factory, provider, db_session):
        factory.assignment("hw-1")
        factory.graded("hw-1", [["sign error"]] * 4)
        factory.state("hw-1", status=AssignmentTagStatus.RUNNING.value)

        result = job.run(OWNER, "hw-1")
        db_session.commit()

        assert result.status == AssignmentTagStatus.INSUFFICIENT_SAMPLES.value
        assert result.sample_count == 4
        assert result.signals == []
        assert provider.prompts == []
        assert _aggregates(db_session) == []

    def test_clusters_ranked_issues(self, job, scenario_b, provider, db_session):
        provider.queue(
            {
                "tags": [
                    {"label": "符號錯誤", "count": 9, "examples": ["sign error", "x", "y"]},
                    {"label": "單位遺漏", "count": "2 students", "examples": ["missing units"]},
                    {"tag": "公式錯誤", "count": 1},
                    {"label": "bad", "count": 0},
                ]
            }
        )

        result = job.run(OWNER, "hw-1")
        db_session.commit()

        prompt = provider.prompts[0]
        assert prompt.index("sign error｜3") < prompt.index("missing units｜2")
        assert prompt.index("missing units｜2") < prompt.index("wrong formula｜1")

        rows = _aggregates(db_session)
        assert [(row.tag_label, row.tag_count) for row in rows] == [
            ("符號錯誤", 6),
            ("單位遺漏", 2),
            ("公式錯誤", 1),
        ]
        assert all(row.tag_count <= 6 for row in rows)
        assert rows[0].examples == ["sign error", "x"]
        assert rows[2].examples is None
        assert rows[0].model == "fake-model"
        assert rows[0].prompt_version == "v1.0"

        assert result.status == AssignmentTagStatus.READY.value
        assert result.sample_count == 6
        assert result.details["new_labels"] == 3
        assert result.signals == [
            LayerSignal(Layer.MERGE, OWNER),
            LayerSignal(Layer.DOMAIN, OWNER, "physics"),
        ]

        labels = {entry.label for entry in db_session.query(TagDictionaryEntry).all()}
        assert labels == {"符號錯誤", "單位遺漏", "公式錯誤"}

    def test_at_most_tag_limit_tags(self, job, scenario_b, provider, db_session):
        provider.queue(
            {"tags": [{"label": f"tag {index}", "count": 1} for index in range(10)]}
        )

        job.run(OWNER, "hw-1")
        db_session.commit()

        assert len(_aggregates(db_session)) == 8

    def test_known_label_keeps_dictionary_spelling(
        self, job, scenario_b, factory, provider, db_session
    ):
        factory.dictionary(["Sign Error"])
        provider.queue({"tags": [{"label": "sign  error", "count": 3}]})

        result = job.run(OWNER, "hw-1")
        db_session.commit()

        assert "Sign Error" in provider.prompts[0]
        assert [row.tag_label for row in _aggregates(db_session)] == ["Sign Error"]
        assert result.details["new_labels"] == 0
        assert result.signals == [LayerSignal(Layer.DOMAIN, OWNER, "physics")]
        assert db_session.query(TagDictionaryEntry).count() == 1

    def test_rerun_replaces_previous_set(self, job, scenario_b, factory, provider, db_session):
        factory.aggregates("hw-1", {"stale tag": 5})
        provider.queue({"tags": [{"label": "fresh tag", "count": 2}]})

        job.run(OWNER, "hw-1")
        db_session.commit()

        assert [row.tag_label for row in _aggregates(db_session)] == ["fresh tag"]

    def test_no_issues_short_circuits(self, job, factory, provider, db_session):
        factory.assignment("hw-1", domain=None)
        factory.graded("hw-1", [[] for _ in range(5)])
        factory.state("hw-1", status=AssignmentTagStatus.RUNNING.value)
        factory.aggregates("hw-1", {"stale tag": 5})

        result = job.run(OWNER, "hw-1")
        db_session.commit()

        assert result.status == AssignmentTagStatus.READY.value
        assert provider.prompts == []
        assert _aggregates(db_session) == []
        assert result.signals == [LayerSignal(Layer.DOMAIN, OWNER, "uncategorized")]

    @pytest.mark.parametrize(
        "reply",
        [
            "I could not find any tags.",
            '{"tags": "none"}',
            {"tags": [{"label": "zero", "count": 0}]},
            {"tags": []},
            "",
        ],
    )
    def test_unusable_output_raises(self, job, scenario_b, provider, reply):
        provider.queue(reply)

        with pytest.raises(ModelOutputError):
            job.run(OWNER, "hw-1")

    def test_locked_state_is_left_alone(self, job, factory, provider, db_session):
        factory.assignment("hw-1")
        factory.graded("hw-1", [["sign error"]] * 6)
        factory.state(
            "hw-1",
            status=AssignmentTagStatus.RUNNING.value,
            manual_locked=True,
            sample_count=6,
        )

        result = job.run(OWNER, "hw-1")
        db_session.commit()

        assert result.status == "locked"
        assert provider.prompts == []

    def test_event_during_run_returns_to_pending(self, job, scenario_b, provider, clock, db_session):
        # The claim cleared dirty; a grading event arrived after it
        state = db_session.get(AssignmentTagState, (OWNER, "hw-1"))
        state.dirty = True
        state.last_event_at = clock()
        db_session.commit()
        provider.queue({"tags": [{"label": "sign error", "count": 3}]})

        result = job.run(OWNER, "hw-1")
        db_session.commit()

        assert result.status == AssignmentTagStatus.PENDING.value
        assert len(_aggregates(db_session)) == 1


class TestConcurrentChanges:
    """Changes committed by another session while the model call is in flight."""

    @pytest.fixture
    def test_engine(self, tmp_path):
        engine = create_engine(
            f"sqlite:///{tmp_path / 'gradetags.db'}",
            connect_args={"check_same_thread": False},
        )
        Base.metadata.create_all(engine)
        yield engine
        engine.dispose()

    @pytest.fixture
    def other_session(self, test_engine):
        session = sessionmaker(bind=test_engine)()
        yield session
        session.close()

    @staticmethod
    def _during_reply(provider, action):
        reply = provider.complete

        def complete(*args, **kwargs):
            action()
            return reply(*args, **kwargs)

        return patch.object(provider, "complete", side_effect=complete)

    def test_grading_event_reopens_window(
        self, job, scenario_b, provider, config, clock, other_session, test_engine
    ):
        service = TaxonomyService(other_session, config, clock)
        provider.queue({"tags": [{"label": "sign error", "count": 3}]})

        with self._during_reply(provider, lambda: service.record_graded(OWNER, ["hw-1"])):
            result = job.run(OWNER, "hw-1")
        job.session.commit()

        fresh = sessionmaker(bind=test_engine)()
        state = fresh.get(AssignmentTagState, (OWNER, "hw-1"))
        assert result.status == AssignmentTagStatus.PENDING.value
        assert state.status == AssignmentTagStatus.PENDING.value
        assert state.dirty is False
        assert state.next_run_at is not None
        assert [row.tag_label for row in _aggregates(fresh)] == ["sign error"]
        fresh.close()

    def test_manual_override_wins(
        self, job, scenario_b, provider, config, clock, other_session, test_engine
    ):
        service = TaxonomyService(other_session, config, clock)
        provider.queue({"tags": [{"label": "sign error", "count": 3}]})

        def override():
            service.apply_override(OWNER, "hw-1", [{"label": "計算錯誤", "count": 12}])

        with self._during_reply(provider, override):
            result = job.run(OWNER, "hw-1")
        job.session.commit()

        fresh = sessionmaker(bind=test_engine)()
        state = fresh.get(AssignmentTagState, (OWNER, "hw-1"))
        rows = _aggregates(fresh)
        assert result.status == "locked"
        assert result.signals == []
        assert state.manual_locked is True
        assert state.model == "manual"
        assert [row.tag_label for row in rows] == ["計算錯誤"]
        assert {row.model for row in rows} == {"manual"}
        assert fresh.query(TagDictionaryEntry).filter_by(label="sign error").count() == 0
        fresh.close()

    def test_unlocked_override_supersedes_run(
        self, job, scenario_b, provider, config, clock, other_session
    ):
        service = TaxonomyService(other_session, config, clock)
        provider.queue({"tags": [{"label": "sign error", "count": 3}]})

        def override():
            service.apply_override(
                OWNER, "hw-1", [{"label": "單位遺漏", "count": 2}], locked=False
            )

        with self._during_reply(provider, override):
            result = job.run(OWNER, "hw-1")
        job.session.commit()

        assert result.status == "superseded"
        assert [row.tag_label for row in _aggregates(job.session)] == ["單位遺漏"]
