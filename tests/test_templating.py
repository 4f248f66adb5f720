from __future__ import annotations

import allure
import pytest

from scaffolder.errors import RenderError
from scaffolder.tasks.templating import is_truthy, render, render_value, resolve_path

pytestmark = [
    allure.epic("Task Execution"),
    allure.feature("Templating"),
]

CONTEXT = {
    "parameters": {"name": "bob", "count": 3, "flags": [True, False], "empty": None},
    "steps": {"fetch": {"output": {"files": ["a.txt", "b.txt"], "meta": {"size": 2}}}},
}


def test_single_expression_keeps_json_type() -> None:
    assert render("{{ parameters.count }}", CONTEXT) == 3
    assert render("{{steps.fetch.output.meta}}", CONTEXT) == {"size": 2}
    assert render("{{ parameters.flags }}", CONTEXT) == [True, False]


def test_mixed_string_interpolates_values() -> None:
    assert render("hello {{ parameters.name }}!", CONTEXT) == "hello bob!"
    assert render("n={{ parameters.count }} f={{ steps.fetch.output.files }}", CONTEXT) == (
        'n=3 f=["a.txt", "b.txt"]'
    )
    assert render("[{{ parameters.empty }}]", CONTEXT) == "[]"


def test_list_index_segments_are_supported() -> None:
    assert resolve_path("steps.fetch.output.files.1", CONTEXT) == "b.txt"


def test_undefined_path_raises_render_error() -> None:
    with pytest.raises(RenderError, match='"parameters.missing" is not defined'):
        render("{{ parameters.missing }}", CONTEXT)
    with pytest.raises(RenderError):
        render("x {{ steps.fetch.output.files.5 }}", CONTEXT)


def test_malformed_expressions_raise_render_error() -> None:
    with pytest.raises(RenderError, match="Invalid template expression"):
        render("{{ parameters.name | upper }}", CONTEXT)
    with pytest.raises(RenderError, match="Unterminated template expression"):
        render("hello {{ parameters.name", CONTEXT)


def test_render_value_walks_nested_documents_without_mutating_context() -> None:
    document = {
        "title": "Repo {{ parameters.name }}",
        "files": "{{ steps.fetch.output.files }}",
        "nested": [{"size": "{{ steps.fetch.output.meta.size }}"}, 7, None, True],
    }

    rendered = render_value(document, CONTEXT)

    assert rendered == {
        "title": "Repo bob",
        "files": ["a.txt", "b.txt"],
        "nested": [{"size": 2}, 7, None, True],
    }
    rendered["files"].append("c.txt")
    assert CONTEXT["steps"]["fetch"]["output"]["files"] == ["a.txt", "b.txt"]


def test_plain_strings_pass_through() -> None:
    assert render("no templates here", CONTEXT) == "no templates here"


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        (True, True),
        ("yes", True),
        (1, True),
        ({"a": 1}, True),
        (False, False),
        (None, False),
        ("", False),
        ("false", False),
        (" False ", False),
        (0, False),
        ([], False),
    ],
)
def test_is_truthy(value, expected: bool) -> None:
    assert is_truthy(value) is expected
