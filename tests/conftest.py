import pytest

from threadline.dependencies import build_components
from threadline.services.repository import InMemoryConversationRepository

from tests.fakes import FakeLLM, RecordingProvider, make_settings


@pytest.fixture
def repository():
    return InMemoryConversationRepository(context_window=10)


@pytest.fixture
def fake_llm():
    return FakeLLM()


@pytest.fixture
def provider():
    return RecordingProvider()


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def components(settings, repository, fake_llm, provider):
    return build_components(settings, repository, llm=fake_llm, provider=provider)
