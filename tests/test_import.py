"""Smoke tests for the public package surface."""

import budgetboost


def test_version() -> None:
    """The package exposes a version string."""
    assert isinstance(budgetboost.__version__, str)
    assert budgetboost.__version__.count(".") == 2


def test_public_names() -> None:
    """Everything in __all__ is importable from the top level."""
    for name in budgetboost.__all__:
        assert hasattr(budgetboost, name), name
