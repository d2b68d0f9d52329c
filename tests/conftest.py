"""Global test configuration and fixtures.

Applies workarounds that must be in place before any test module imports.
"""

from __future__ import annotations

import decimal
from datetime import datetime, timezone

import pytest

# ---------------------------------------------------------------------------
# Python 3.14 workaround for sqlglot / ibis
# ---------------------------------------------------------------------------
# sqlglot's Oracle compiler triggers decimal.InvalidOperation when parsing
# the literal "binary_double_nan" during ibis backend initialization.
# Disabling the trap before any ibis import touches compilers allows the
# import to succeed harmlessly. Adapter threads apply the same setting to
# their own decimal context before connecting.
# ---------------------------------------------------------------------------
decimal.getcontext().traps[decimal.InvalidOperation] = False


@pytest.fixture
def t0() -> datetime:
    """Reference event time shared by scenario tests."""
    return datetime(2024, 6, 1, 12, 0, 0, tzinfo=timezone.utc)
