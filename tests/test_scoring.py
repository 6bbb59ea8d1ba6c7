"""Tests for query parsing, temporal decay and relevance scoring."""

import math
from datetime import datetime, timedelta, timezone

import pytest

from knowledgemcp.config import settings
from knowledgemcp.errors import ValidationError
from knowledgemcp.records import Kind, Record
from knowledgemcp.scoring import (
    DECAY_FUNCTIONS,
    DecayType,
    TemporalDecay,
    TemporalScoringMode,
    frequency,
    parse_query,
    rank,
    score_record,
)

NOW = datetime(2026, 6, 1, 12, 0, tzinfo=timezone.utc)


def make_record(record_id: str, age_days: float = 0.0, access_count: int = 0) -> Record:
    created = NOW - timedelta(days=age_days)
    return Record(
        id=record_id,
        kind=Kind.WORK_NOTE,
        body=f"note {record_id}",
        workspace="test",
        created_at=created,
        modified_at=created,
        access_count=access_count,
    )


class TestParseQuery:
    """field:value tokens become structured filters."""

    def test_plain_text(self):
        parsed = parse_query("fix login bug")

        assert parsed.text == "fix login bug"
        assert parsed.filters == {}

    def test_type_token_becomes_kind_filter(self):
        parsed = parse_query("type:Checklist login")

        assert parsed.text == "login"
        assert parsed.filters["kinds"] == [Kind.CHECKLIST]

    def test_multiple_filters(self):
        parsed = parse_query("tag:auth status:open priority:high session:abc archived:true oauth")

        assert parsed.text == "oauth"
        assert parsed.filters["tags"] == ["auth"]
        assert parsed.filters["statuses"] == ["open"]
        assert parsed.filters["priorities"] == ["high"]
        assert parsed.filters["session_id"] == "abc"
        assert parsed.filters["include_archived"] is True

    def test_unknown_field_is_ignored(self):
        parsed = parse_query("colour:red login")

        assert parsed.text == "login"
        assert parsed.filters == {}

    def test_url_stays_in_text(self):
        parsed = parse_query("see https://example.com/login")

        assert parsed.text == "see https://example.com/login"
        assert parsed.filters == {}

    def test_project_insight_alias(self):
        assert parse_query("type:ProjectInsight").filters["kinds"] == [Kind.INSIGHT]

    def test_unknown_kind_is_rejected(self):
        with pytest.raises(ValidationError):
            parse_query("type:Nonsense")

    def test_empty_query(self):
        parsed = parse_query("")

        assert parsed.text == ""
        assert parsed.filters == {}


class TestTemporalDecay:
    """Decay curves from fresh (1.0) toward old."""

    def test_exponential_half_life(self):
        decay = TemporalDecay(30.0, DecayType.EXPONENTIAL)

        assert decay.calculate(0) == 1.0
        assert decay.calculate(30) == pytest.approx(0.5)
        assert decay.calculate(60) == pytest.approx(0.25)

    def test_linear_has_floor(self):
        decay = TemporalDecay(90.0, DecayType.LINEAR)

        assert decay.calculate(90) == pytest.approx(0.5)
        assert decay.calculate(1000) == 0.1

    def test_gaussian(self):
        decay = TemporalDecay(30.0, DecayType.GAUSSIAN)

        assert decay.calculate(15) == pytest.approx(math.exp(-1))

    def test_future_dates_get_full_weight(self):
        assert TemporalDecay().calculate(-5) == 1.0

    def test_aggressive_decays_faster_than_gentle(self):
        age = 14
        aggressive = DECAY_FUNCTIONS[TemporalScoringMode.AGGRESSIVE].calculate(age)
        default = DECAY_FUNCTIONS[TemporalScoringMode.DEFAULT].calculate(age)
        gentle = DECAY_FUNCTIONS[TemporalScoringMode.GENTLE].calculate(age)

        assert aggressive < default < gentle

    def test_describe(self):
        assert "30 days" in TemporalDecay(30.0).describe()


class TestModes:
    """Temporal scoring mode parsing."""

    def test_parse_is_case_insensitive(self):
        assert TemporalScoringMode.parse("Aggressive") is TemporalScoringMode.AGGRESSIVE

    def test_parse_defaults(self):
        assert TemporalScoringMode.parse(None) is TemporalScoringMode.DEFAULT
        assert TemporalScoringMode.parse("") is TemporalScoringMode.DEFAULT

    def test_parse_rejects_unknown(self):
        with pytest.raises(ValidationError):
            TemporalScoringMode.parse("sometimes")


class TestScore:
    """Combined score."""

    def test_frequency(self):
        assert frequency(0) == 0.0
        assert frequency(9) == pytest.approx(0.5)
        assert frequency(10000) == 1.0

    def test_newer_scores_higher(self):
        new = score_record(make_record("b", age_days=1), 1.0, TemporalScoringMode.DEFAULT, now=NOW)
        old = score_record(make_record("a", age_days=60), 1.0, TemporalScoringMode.DEFAULT, now=NOW)

        assert new.score > old.score

    def test_full_text_hit_beats_substring_hit(self):
        record = make_record("a", age_days=3)

        fts_hit = score_record(record, 1.0, TemporalScoringMode.DEFAULT, now=NOW)
        substring = score_record(record, settings.substring_match_score, TemporalScoringMode.DEFAULT, now=NOW)

        assert fts_hit.score > substring.score
        assert fts_hit.text_score == 1.0

    def test_none_mode_ignores_recency_and_access(self):
        new = score_record(make_record("b", age_days=0, access_count=50), 1.0, TemporalScoringMode.NONE, now=NOW)
        old = score_record(make_record("a", age_days=300), 1.0, TemporalScoringMode.NONE, now=NOW)

        assert new.score == old.score
        assert new.recency == 0.0

    def test_frequency_boost_is_opt_in(self):
        record = make_record("a", access_count=99)

        plain = score_record(record, 1.0, TemporalScoringMode.DEFAULT, now=NOW)
        boosted = score_record(record, 1.0, TemporalScoringMode.DEFAULT, now=NOW, boost_frequent=True)

        assert plain.frequency == 0.0
        assert boosted.score == pytest.approx(plain.score + settings.access_weight)


class TestRank:
    """Ordering law."""

    def test_descending_score(self):
        scored = [
            score_record(make_record(str(i), age_days=i * 3, access_count=i % 4), 1.0,
                         TemporalScoringMode.DEFAULT, now=NOW, boost_frequent=True)
            for i in range(20)
        ]

        ranked = rank(scored)

        for first, second in zip(ranked, ranked[1:]):
            assert first.score >= second.score

    def test_ties_go_to_newest(self):
        older = score_record(make_record("a", age_days=2), 1.0, TemporalScoringMode.NONE, now=NOW)
        newer = score_record(make_record("b", age_days=1), 1.0, TemporalScoringMode.NONE, now=NOW)

        assert [s.record.id for s in rank([older, newer])] == ["b", "a"]
