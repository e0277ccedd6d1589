"""
Tests for mapping property sets onto schema rows.
"""

from mcrun.normalize import merge, normalize, normalize_batch, pairs


class TestNormalize:
    """Test single property set normalization."""

    def test_one_entry_per_column(self, job_schema, zao_properties):
        row = normalize(zao_properties, job_schema)
        assert list(row) == job_schema.names

    def test_keys_match_case_insensitively(self, job_schema, zao_properties):
        row = normalize(zao_properties, job_schema)
        assert row["id"] == "ZAO001"
        assert row["formula"] == "ZnSb2O4"
        assert row["method"] == "PBE0"

    def test_values_pass_through_as_text(self, job_schema, zao_properties):
        """No coercion: the store checks kinds on write."""
        row = normalize(zao_properties, job_schema)
        assert row["complete"] == "yes"
        assert row["cores"] == "64"

    def test_unknown_keys_dropped(self, job_schema, zao_properties):
        row = normalize(zao_properties, job_schema)
        assert "walltime" not in row
        assert "Walltime" not in row

    def test_missing_columns_are_none(self, job_schema, zao_properties):
        row = normalize(zao_properties, job_schema)
        assert row["project"] is None
        assert row["run"] is None

    def test_empty_property_set(self, small_schema):
        assert normalize([], small_schema) == {"id": None, "formula": None, "complete": None}

    def test_no_matching_keys_gives_all_none(self, small_schema):
        row = normalize([("walltime", "1h"), ("queue", "short")], small_schema)
        assert all(v is None for v in row.values())
        assert len(row) == 3

    def test_empty_string_is_not_absence(self, small_schema):
        row = normalize([("formula", "")], small_schema)
        assert row["formula"] == ""

    def test_last_matching_key_wins(self, small_schema):
        row = normalize([("formula", "ZnO"), ("FORMULA", "ZnSb2O4")], small_schema)
        assert row["formula"] == "ZnSb2O4"

    def test_accepts_mapping(self, small_schema):
        row = normalize({"ID": "A1", "Formula": "ZnSb2O4"}, small_schema)
        assert row == {"id": "A1", "formula": "ZnSb2O4", "complete": None}

    def test_non_text_keys_dropped(self, small_schema):
        row = normalize([(3, "x"), ("id", "A1")], small_schema)
        assert row["id"] == "A1"


class TestNormalizeBatch:
    """Test batch normalization."""

    def test_order_preserved(self, small_schema):
        sets = [[("id", f"A{i}")] for i in range(10)]
        rows = normalize_batch(sets, small_schema)
        assert [r["id"] for r in rows] == [f"A{i}" for i in range(10)]

    def test_each_set_independent(self, small_schema):
        rows = normalize_batch([{"ID": "A1", "Formula": "ZnSb2O4"}, {"ID": "A2", "Complete": "true"}], small_schema)
        assert rows[0] == {"id": "A1", "formula": "ZnSb2O4", "complete": None}
        assert rows[1] == {"id": "A2", "formula": None, "complete": "true"}

    def test_empty_batch(self, small_schema):
        assert normalize_batch([], small_schema) == []


class TestMerge:
    """Test combining property sources."""

    def test_later_source_overrides(self, small_schema):
        guessed = [("id", "ZAO001"), ("formula", "ZnO")]
        manual = [("Formula", "ZnSb2O4")]
        row = normalize(merge(guessed, manual), small_schema)
        assert row["formula"] == "ZnSb2O4"
        assert row["id"] == "ZAO001"

    def test_none_does_not_override(self, small_schema):
        row = normalize(merge([("formula", "ZnO")], [("FORMULA", None)]), small_schema)
        assert row["formula"] == "ZnO"

    def test_none_fills_when_nothing_earlier(self, small_schema):
        merged = merge([("id", "A1")], [("complete", None)])
        assert ("complete", None) in merged

    def test_accepts_mappings(self):
        assert merge({"id": "A1"}, {"formula": "ZnO"}) == [("id", "A1"), ("formula", "ZnO")]


class TestPairs:
    """Test iterating property sets."""

    def test_mapping_yields_items(self):
        assert list(pairs({"ID": "A1", "Formula": None})) == [("ID", "A1"), ("Formula", None)]

    def test_pair_sequence_passes_through(self):
        props = [("ID", "A1"), ("ID", "A2")]
        assert list(pairs(props)) == props
