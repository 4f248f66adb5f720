from __future__ import annotations

import allure
import pytest

from scaffolder.errors import InputError
from scaffolder.tasks.models import TaskSpec, TaskStatus

pytestmark = [
    allure.epic("Task Broker"),
    allure.feature("Task Spec"),
]


def test_spec_round_trips_wire_keys() -> None:
    payload = {
        "steps": [
            {"id": "fetch", "name": "Fetch", "action": "fetch:plain", "input": {"url": "./x"}},
            {"id": "publish", "name": "publish", "action": "publish:github", "if": "{{ x }}"},
        ],
        "values": {"name": "demo"},
        "output": {"url": "{{ steps.publish.output.url }}"},
        "baseUrl": "https://example.com/t",
    }

    spec = TaskSpec.from_dict(payload)

    assert spec.steps[1].condition == "{{ x }}"
    assert spec.base_url == "https://example.com/t"
    assert spec.to_dict() == payload


def test_step_name_defaults_to_id() -> None:
    spec = TaskSpec.from_dict({"steps": [{"id": "only", "action": "debug:log"}]})

    assert spec.steps[0].name == "only"
    assert spec.values == {}
    assert spec.output == {}


@pytest.mark.parametrize(
    ("payload", "message"),
    [
        ({}, "'steps' array"),
        ({"steps": [{"action": "debug:log"}]}, "'id'"),
        ({"steps": [{"id": "a"}]}, "'action'"),
        ({"steps": [{"id": "a", "action": "x", "input": []}]}, "'input' must be an object"),
        ({"steps": [{"id": "a", "action": "x", "if": 3}]}, "'if'"),
        (
            {"steps": [{"id": "a", "action": "x"}, {"id": "a", "action": "y"}]},
            "Duplicate step id",
        ),
        ({"steps": [], "values": []}, "'values'"),
        ({"steps": [], "baseUrl": 1}, "'baseUrl'"),
    ],
)
def test_invalid_specs_are_rejected(payload: dict, message: str) -> None:
    with pytest.raises(InputError, match=message):
        TaskSpec.from_dict(payload)


def test_terminal_statuses() -> None:
    assert not TaskStatus.OPEN.is_terminal
    assert not TaskStatus.PROCESSING.is_terminal
    assert TaskStatus.COMPLETED.is_terminal
    assert TaskStatus.FAILED.is_terminal
    assert TaskStatus.CANCELLED.is_terminal
