"""
Tests for gantry.query: reserved parameters, filters and cursor tokens.
"""

import datetime

import pytest

from gantry._datastructures import MultiDict
from gantry.config import QueryConfig
from gantry.faults import InvalidParamFault
from gantry.query import (
    QueryDescriptor,
    decode_cursor,
    decode_query,
    encode_cursor,
    parse_bool,
    resolve_expands,
    split_csv,
)

from sample_models import Category, Ticket, User


def q(qs: str, model=User, config=None) -> QueryDescriptor:
    return decode_query(MultiDict.from_query_string(qs), model, config)


class TestPaging:
    def test_defaults(self):
        d = q("")
        assert d.page == 1
        assert d.size == 1000
        assert d.offset == 0
        assert d.nocache is True
        assert d.cursor_next is True
        assert d.depth == 1

    def test_page_and_size(self):
        d = q("page=3&size=20")
        assert (d.page, d.size, d.offset) == (3, 20, 40)

    def test_size_capped(self):
        d = q("size=50", config=QueryConfig(default_size=10, max_size=25))
        assert d.size == 25
        assert q("", config=QueryConfig(default_size=10)).size == 10

    def test_non_positive_values_fall_back(self):
        d = q("page=0&size=-5")
        assert d.page == 1
        assert d.size == 1000

    @pytest.mark.parametrize("qs", ["page=abc", "size=1.5", "_depth=deep"])
    def test_bad_integers(self, qs):
        with pytest.raises(InvalidParamFault):
            q(qs)

    def test_cursor_resets_page(self):
        d = q("page=4&_cursor_value=abc")
        assert d.page == 1
        assert d.has_cursor


class TestFlags:
    def test_parse_bool(self):
        assert parse_bool("yes") is True
        assert parse_bool("OFF") is False
        assert parse_bool("maybe", default=True) is True
        assert parse_bool(None) is False

    def test_reserved_flags(self):
        d = q("_fuzzy=1&_or=true&_nocache=false&_nototal=1&_show_deleted=1&_cursor_next=0")
        assert d.fuzzy and d.or_ and d.nototal and d.show_deleted
        assert d.nocache is False
        assert d.cursor_next is False

    def test_cache_by_default(self):
        assert q("", config=QueryConfig(cache_by_default=True)).nocache is False

    def test_csv_params(self):
        d = q("_select=name,%20email&_cursor_fields=name&_sortby=name%20desc&_index=idx_users_name")
        assert d.select == ["name", "email"]
        assert d.cursor_fields == ["name"]
        assert d.sortby == "name desc"
        assert d.index == "idx_users_name"
        assert split_csv(" a, ,b ") == ["a", "b"]


class TestTimeRange:
    def test_window(self):
        d = q("_column_name=created_at&_start_time=2024-01-01%2000:00:00&_end_time=2024-02-01%2000:00:00")
        assert d.has_time_range
        assert d.start_time == datetime.datetime(2024, 1, 1)
        assert d.end_time == datetime.datetime(2024, 2, 1)

    def test_swapped_when_reversed(self):
        d = q("_column_name=created_at&_start_time=2024-02-01%2000:00:00&_end_time=2024-01-01%2000:00:00")
        assert d.start_time < d.end_time

    def test_bad_layout_ignored(self):
        d = q("_column_name=created_at&_start_time=yesterday")
        assert d.start_time is None
        assert not d.has_time_range

    def test_needs_column(self):
        d = q("_start_time=2024-01-01%2000:00:00")
        assert d.start_time is None


class TestExpand:
    def test_all(self):
        assert resolve_expands(Category, ["all"], 1) == ["children", "parent"]

    def test_depth_repeats_has_many(self):
        d = q("_expand=children,parent&_depth=3", model=Category)
        assert d.expand == ["children.children.children", "parent"]

    def test_case_insensitive(self):
        assert q("_expand=CHILDREN", model=Category).expand == ["children"]

    def test_depth_out_of_range(self):
        d = q("_expand=children&_depth=500", model=Category)
        assert d.depth == 1

    def test_unknown_names_dropped(self):
        assert q("_expand=ghosts", model=Category).expand == []


class TestFilters:
    def test_single_value(self):
        d = q("name=u1&age=0")
        assert d.filters == {"name": "u1", "age": 0}

    def test_csv_becomes_multi(self):
        d = q("name=u1,u2")
        assert d.multi_filters == {"name": ["u1", "u2"]}
        assert "name" not in d.filters

    def test_repeated_becomes_multi(self):
        d = q("name=u1&name=u2")
        assert d.multi_filters == {"name": ["u1", "u2"]}

    def test_unknown_params_ignored(self):
        d = q("color=red&_unknown=1")
        assert d.filters == {}

    def test_non_filter_fields_ignored(self):
        d = q("deleted_at=2024-01-01%2000:00:00")
        assert d.filters == {}

    def test_zero_value_on_non_null_field_is_unset(self):
        assert q("email=").filters == {}

    def test_bad_value(self):
        with pytest.raises(InvalidParamFault) as exc:
            q("age=old")
        assert exc.value.metadata["param"] == "age"

    def test_plain_dict_params(self):
        d = decode_query({"name": ["a", "b"], "size": "5"}, User)
        assert d.multi_filters == {"name": ["a", "b"]}
        assert d.size == 5

    def test_query_model(self):
        d = q("status=open", model=Ticket)
        example = d.query_model(Ticket)
        assert isinstance(example, Ticket)
        assert example.status == "open"
        assert example.meaningful() == {"status": "open"}


class TestCursorTokens:
    def test_round_trip(self):
        token = encode_cursor(["b", "0190-id"])
        assert "=" not in token
        assert decode_cursor(token) == ["b", "0190-id"]

    def test_invalid_tokens(self):
        assert decode_cursor("!!!") is None
        assert decode_cursor(encode_cursor([1])[:-1] + "{") is None

    def test_non_list_payload(self):
        import base64

        token = base64.urlsafe_b64encode(b'{"a": 1}').decode()
        assert decode_cursor(token) is None
