"""Test configuration."""
import os
from collections.abc import Iterator
from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

# --- Default env config
os.environ.setdefault("AUDITKIT_ENV", "test")
os.environ.setdefault("REVISION_KEY_REUSE", "forbid")

from auditkit.config import get_settings  # noqa: E402
from auditkit.db import build_engine, build_sessionmaker, create_all  # noqa: E402
from auditkit.models import User  # noqa: E402
from auditkit.services.providers import FixedClock  # noqa: E402
from auditkit.services.repository import EntityRepository  # noqa: E402
from auditkit.services.revisions import RevisionStore  # noqa: E402

START = datetime(2026, 1, 1, 9, 0, tzinfo=UTC)


@pytest.fixture(autouse=True)
def fresh_settings() -> Iterator[None]:
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def engine(tmp_path) -> Iterator[Engine]:
    test_engine = build_engine(f"sqlite:///{tmp_path / 'auditkit_test.db'}")
    create_all(bind=test_engine)
    yield test_engine
    test_engine.dispose()


@pytest.fixture
def session_factory(engine: Engine) -> sessionmaker[Session]:
    return build_sessionmaker(engine)


@pytest.fixture
def db_session(session_factory: sessionmaker[Session]) -> Iterator[Session]:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(START, step=timedelta(seconds=1))


@pytest.fixture
def store() -> RevisionStore:
    return RevisionStore(key_reuse="forbid")


@pytest.fixture
def users(db_session: Session, store: RevisionStore, clock: FixedClock) -> EntityRepository[User]:
    return EntityRepository(db_session, User, store=store, clock=clock)


@pytest.fixture
def make_user(users: EntityRepository[User]):
    """Factory creating a live user through the audited repository."""

    counter = {"n": 0}

    def _factory(*, actor: str = "AdminUser", **fields) -> User:
        counter["n"] += 1
        data = {
            "username": f"user-{counter['n']}",
            "email": f"user-{counter['n']}@example.com",
        }
        data.update(fields)
        return users.create(data, actor=actor)

    return _factory
