import importlib

import pytest

from import_engine.results import ERROR, WARNING, Issue, RowFailure, RowSuccess


@pytest.mark.parametrize("module", [
    "import_engine", "import_engine.results", "import_engine.importer",
    "services.import_service", "api",
])
def test_packages_import(module):
    assert importlib.import_module(module) is not None


def test_row_failure_defaults():
    failure = RowFailure(3, "validation", "name is required")

    assert failure.field is None
    assert failure.warnings == []
    assert failure.ok is False


def test_row_failures_do_not_share_warning_lists():
    first = RowFailure(1, "validation", "bad")
    second = RowFailure(2, "validation", "bad")

    first.warnings.append(Issue("validation", "note", severity=WARNING))

    assert second.warnings == []


def test_from_issues_keeps_first_blocking_field_and_splits_warnings():
    issues = [
        Issue("validation", "Sale price should be greater than cost price",
              "sale_price", WARNING),
        Issue("validation", "name is required", "name", ERROR),
        Issue("validation", "price must be a number", "price", ERROR),
    ]

    failure = RowFailure.from_issues(7, issues)

    assert failure.row_number == 7
    assert failure.field == "name"
    assert failure.message == "name is required; price must be a number"
    assert [w.field for w in failure.warnings] == ["sale_price"]


def test_row_success_is_ok():
    assert RowSuccess(1, product_id=5, created=True).ok is True
