import pytest

from fakestream.config import Settings


@pytest.fixture
def settings():
    return Settings(
        api_key="sk-server",
        source_api_url="http://upstream.test",
        chunk_size=2,
        chunk_delay=0,
        heartbeat_interval=0.01,
    )
