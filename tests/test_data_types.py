"""Tests for Context merging and filtering."""

import pytest

from arbor.data_types import (
    Context,
    RawPage,
    matches_only,
    merge_context,
)


class TestContext:
    def test_is_a_mapping_equal_to_dicts(self) -> None:
        context = Context({"a": 1}, b=2)

        assert context == {"a": 1, "b": 2}
        assert dict(context) == {"a": 1, "b": 2}
        assert len(context) == 2

    def test_is_immutable(self) -> None:
        context = Context(a=1)

        with pytest.raises(TypeError):
            context["a"] = 2  # type: ignore[index]

    def test_navigation_properties(self) -> None:
        context = Context(url="http://x.test/", processor="p")

        assert context.url == "http://x.test/"
        assert context.processor == "p"
        assert Context().url is None

    @pytest.mark.parametrize(
        "fields,require_url,terminal",
        [
            ({"a": 1}, True, True),
            ({"processor": "p"}, True, True),
            ({"processor": "p"}, False, False),
            ({"url": "http://x.test/"}, True, True),
            ({"url": "http://x.test/", "processor": "p"}, True, False),
        ],
    )
    def test_is_terminal(
        self, fields: dict, require_url: bool, terminal: bool
    ) -> None:
        assert Context(fields).is_terminal(require_url) is terminal


class TestMerge:
    def test_child_wins_on_collision(self) -> None:
        parent = Context(a=1, b=1)

        assert parent.merge({"b": 2, "c": 3}) == {"a": 1, "b": 2, "c": 3}

    def test_navigation_fields_are_not_inherited(self) -> None:
        """A child without url/processor shall be a leaf."""
        parent = Context(a=1, url="http://x.test/", processor="p")
        merged = parent.merge({"c": 3})

        assert merged == {"a": 1, "c": 3}
        assert merged.is_terminal()

    def test_child_navigation_fields_kept(self) -> None:
        parent = Context(a=1, url="http://x.test/", processor="p")
        merged = parent.merge({"url": "http://x.test/2", "processor": "q"})

        assert merged == {
            "a": 1,
            "url": "http://x.test/2",
            "processor": "q",
        }

    def test_merged_values_are_copies(self) -> None:
        child = {"tags": ["a"]}
        merged = Context(x=1).merge(child)
        child["tags"].append("b")

        assert merged["tags"] == ["a"]

    def test_to_dict_is_a_copy(self) -> None:
        context = Context(tags=["a"])
        copy = context.to_dict()
        copy["tags"].append("b")

        assert context["tags"] == ["a"]


class TestMergeContext:
    def test_relative_url_resolved_against_parent(self) -> None:
        parent = Context(url="http://x.test/cases", processor="list")
        merged = merge_context(parent, {"url": "/cases/1", "processor": "d"})

        assert merged.url == "http://x.test/cases/1"

    def test_absolute_url_unchanged(self) -> None:
        parent = Context(url="http://x.test/cases", processor="list")
        merged = merge_context(
            parent, {"url": "https://other.test/a", "processor": "d"}
        )

        assert merged.url == "https://other.test/a"

    def test_without_parent_url(self) -> None:
        merged = merge_context(Context(), {"url": "/a", "processor": "d"})

        assert merged.url == "/a"


class TestMatchesOnly:
    def test_single_value(self) -> None:
        assert matches_only({"court": "bug"}, {"court": "bug"})
        assert not matches_only({"court": "moth"}, {"court": "bug"})

    def test_list_of_values(self) -> None:
        only = {"year": [2023, 2024]}

        assert matches_only({"year": 2024}, only)
        assert not matches_only({"year": 2022}, only)

    def test_absent_fields_are_not_checked(self) -> None:
        assert matches_only({"other": 1}, {"court": "bug"})


class TestRawPage:
    def test_content_type_and_metadata(self) -> None:
        page = RawPage(
            url="http://x.test/",
            content=b"{}",
            headers={"content-type": "application/json"},
        )

        assert page.content_type == "application/json"
        assert page.metadata() == {
            "url": "http://x.test/",
            "status_code": 200,
            "headers": {"content-type": "application/json"},
        }
