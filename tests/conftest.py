import pytest

from inbox_triage.config import Config, DigestPolicy
from inbox_triage.database import create_db_engine, create_session_factory, init_db
from inbox_triage.storage import upsert_account


@pytest.fixture
def config():
    return Config(
        _env_file=None,
        database_url="sqlite://",
        cron_secret="test-secret",
        app_url="http://testserver",
        openai_api_key="sk-test",
        digest_policy=DigestPolicy.NEVER,
    )


@pytest.fixture
def session_factory():
    engine = create_db_engine("sqlite://")
    init_db(engine)
    yield create_session_factory(engine)
    engine.dispose()


@pytest.fixture
def session(session_factory):
    s = session_factory()
    yield s
    s.close()


@pytest.fixture
def account(session):
    return upsert_account(session, "me@example.com", "access-1", "refresh-1", None)


@pytest.fixture
def other_account(session):
    return upsert_account(session, "other@example.com", "access-2", "refresh-2", None)


@pytest.fixture
def file_session_factories(tmp_path):
    """Two engines on one SQLite file, standing in for two concurrent runs."""
    url = f"sqlite:///{tmp_path / 'triage.db'}"
    first = create_db_engine(url)
    second = create_db_engine(url)
    init_db(first)
    yield create_session_factory(first), create_session_factory(second)
    first.dispose()
    second.dispose()
