"""Shared fixtures — fake collaborators and a fragment holder per test."""

import pytest

from helpers import FakeCompiler
from optiplay.bundler.linker import EsmLinker
from optiplay.pipeline.diagnostics import MemorySurface
from optiplay.state.codec import MemoryFragment, StateCodec


@pytest.fixture
def codec():
    return StateCodec()


@pytest.fixture
def fragment():
    """Empty fragment: the session starts from defaults."""
    return MemoryFragment()


@pytest.fixture
def compiler():
    return FakeCompiler()


@pytest.fixture
def linker():
    return EsmLinker()


@pytest.fixture
def surface():
    return MemorySurface()
