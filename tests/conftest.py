"""Shared pytest fixtures."""

from __future__ import annotations

from collections.abc import Iterator

import pytest

from knitsmith.ui.cli import state as cli_state


@pytest.fixture(autouse=True)
def _reset_cli_state() -> Iterator[None]:
    """Isolate tests from CLI state left behind in the module-level context var."""
    token = cli_state._STATE_VAR.set(None)
    yield
    cli_state._STATE_VAR.reset(token)
