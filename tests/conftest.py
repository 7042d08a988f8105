# SPDX-License-Identifier: Apache-2.0
"""
Shared fixtures for the Faultline test suite.

The database under test is pluggable:

    FAULTLINE_DATABASE="package.module:ClassName"

The class must accept the ``MockDatabase`` keyword arguments (``rules``,
``latency_ms``) and offer ``connect()`` and ``mint_token()``. By default the
in-memory mock is used.
"""

from __future__ import annotations

import importlib
import inspect
import os
from typing import Any, Callable, Optional

import pytest

from faultline_sdk.core.instrumentation_context import InstrumentationContext

# ---------------------------------------------------------------------------
# Pluggable database
# ---------------------------------------------------------------------------

DATABASE_ENV = "FAULTLINE_DATABASE"
DEFAULT_DATABASE = "faultline_sdk.mock.mock_client:MockDatabase"

RULES = {
    "/": {".read": "true", ".write": "true"},
    "/forbidden": {".read": "false", ".write": "false"},
    "/private": {".read": "auth != null", ".write": "auth != null"},
}

_DATABASE_CLASS: Optional[type] = None


class DatabaseValidationError(RuntimeError):
    pass


def _load_class_from_spec(spec: str) -> type:
    """Load a class from a 'package.module:ClassName' string."""
    module_name, _, class_name = spec.partition(":")
    if not module_name or not class_name:
        raise DatabaseValidationError(
            f"Invalid database spec '{spec}'. Expected 'package.module:ClassName'."
        )
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise DatabaseValidationError(
            f"Failed to import database module '{module_name}' for spec '{spec}'."
        ) from exc
    cls = getattr(module, class_name, None)
    if not inspect.isclass(cls):
        raise DatabaseValidationError(
            f"Database class '{class_name}' not found in module '{module_name}'."
        )
    return cls


def _get_database_class() -> type:
    global _DATABASE_CLASS
    if _DATABASE_CLASS is None:
        _DATABASE_CLASS = _load_class_from_spec(os.getenv(DATABASE_ENV, DEFAULT_DATABASE))
    return _DATABASE_CLASS


@pytest.fixture
def make_database() -> Callable[..., Any]:
    """Factory for databases with custom rules or latency."""
    Database = _get_database_class()

    def factory(**kwargs: Any) -> Any:
        kwargs.setdefault("rules", RULES)
        return Database(**kwargs)

    return factory


@pytest.fixture
def database(make_database):
    return make_database()


@pytest.fixture
def context() -> InstrumentationContext:
    """A fresh, isolated instrumentation context."""
    return InstrumentationContext()


@pytest.fixture
def simulation_token(database) -> Callable[[str], str]:
    """Token generator minting simulate + debug credentials."""

    def generate(identity: str) -> str:
        return database.mint_token(identity or "anonymous", simulate=True, debug=True)

    return generate
