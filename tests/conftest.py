"""Shared fixtures: a started native engine per test."""

import pytest

from podmix.engine.native import NativeEngine


@pytest.fixture
def engine():
    eng = NativeEngine()
    eng.start()
    yield eng
    eng.dispose()
