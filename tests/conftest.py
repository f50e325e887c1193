import pytest

from clipbot.services.clip_store import ClipStore
from fakes import FakeBot, FakeGuild


@pytest.fixture
def store(tmp_path):
    return ClipStore(tmp_path / "sounds")


@pytest.fixture
def guild():
    return FakeGuild()


@pytest.fixture
def bot():
    return FakeBot()
