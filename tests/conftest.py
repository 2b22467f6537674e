"""
tests/conftest.py

Shared fixtures: a throwaway SQLite catalog database per test.
"""

from __future__ import annotations

from collections.abc import Iterator

import pytest
from sqlalchemy.orm import Session, sessionmaker

import db.models  # noqa: F401  registers every model on Base.metadata
from db.base import Base
from db.repositories.source_repository import SourceRepository
from db.session import create_db_engine, create_session_factory
from tests.fakes import FakeMapper


@pytest.fixture()
def engine(tmp_path):
    engine = create_db_engine(f"sqlite:///{tmp_path / 'catalog.db'}")
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def session_factory(engine) -> sessionmaker[Session]:
    return create_session_factory(engine)


@pytest.fixture()
def session(session_factory) -> Iterator[Session]:
    with session_factory() as db_session:
        yield db_session


@pytest.fixture()
def source_id(session):
    source = SourceRepository(session).get_or_create("fake")
    session.commit()
    return source.id


@pytest.fixture()
def fake_mapper() -> FakeMapper:
    return FakeMapper()
