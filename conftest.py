"""Shared pytest fixtures. Living at the repository root puts ``src`` on the import path."""

import pytest

from src.utils.random import set_seed


@pytest.fixture(autouse=True)
def _seed_everything():
    set_seed(0)
