"""Tests for the format library."""

import pytest

from flux_scheduler.tool.format import (
    JsonFormatter,
    PrintFormatter,
    YamlFormatter,
    format_columns,
    formatter,
)


def test_format_columns_empty() -> None:
    """Tests with no rows."""
    assert list(format_columns([], [])) == []


def test_format_columns_empty_rows() -> None:
    """Tests with only headers."""
    assert list(format_columns(["a", "b", "c"], [])) == ["a    b    c"]


def test_format_columns_rows() -> None:
    """Tests format with normal rows"""
    assert list(
        format_columns(
            ["name", "status"], [["apps", "Ready"], ["infrastructure", "Failed"]]
        )
    ) == [
        "name              status",
        "apps              Ready",
        "infrastructure    Failed",
    ]


def test_print_formatter() -> None:
    """Print formatting with empty data."""
    assert list(PrintFormatter().format([])) == []


def test_print_formatter_data() -> None:
    """Print formatting data objects, with empty cells and lists."""
    assert list(
        PrintFormatter().format(
            [
                {"name": "infra", "depends-on": [], "retries": 0},
                {"name": "apps", "depends-on": ["infra", "crds"], "retries": None},
            ]
        )
    ) == [
        "NAME     DEPENDS-ON    RETRIES",
        "infra    -             0",
        "apps     infra,crds    -",
    ]


def test_print_formatter_keys() -> None:
    """Print formatting with column names."""
    assert list(
        PrintFormatter(keys=["name", "message"]).format(
            [
                {"name": "infra", "status": "Ready"},
                {"name": "apps", "status": "Failed", "message": "boom"},
            ],
        )
    ) == [
        "NAME     MESSAGE",
        "infra    -",
        "apps     boom",
    ]


def test_yaml_formatter() -> None:
    """Print formatting as a yaml document."""
    assert list(
        YamlFormatter().format(
            [
                {"name": "apps", "dependsOn": ["infra"]},
                {"name": "infra", "dependsOn": []},
            ]
        )
    ) == [
        "---",
        "- name: apps",
        "  dependsOn:",
        "  - infra",
        "- name: infra",
        "  dependsOn: []",
    ]


def test_json_formatter() -> None:
    """Print formatting as json."""
    assert list(JsonFormatter().format([{"name": "apps", "retries": 1}])) == [
        "[",
        "    {",
        '        "name": "apps",',
        '        "retries": 1',
        "    }",
        "]",
    ]


def test_formatter_choice() -> None:
    """Test the formatter for each output flag."""
    assert isinstance(formatter("yaml"), YamlFormatter)
    assert isinstance(formatter("json"), JsonFormatter)
    assert isinstance(formatter("table", ["name"]), PrintFormatter)


def test_print_to_current_stdout(capsys: pytest.CaptureFixture[str]) -> None:
    """Test output goes to stdout as it is when printing."""
    formatter("table", ["name"]).print([{"name": "apps"}])
    assert capsys.readouterr().out == "NAME\napps\n"
