from typing import Generator

import pytest
from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session, sessionmaker

from db.models import Base
from db.repositories import AssetMappingRepository
from domain.assets import AssetResolver
from tests.helpers.factories import default_mappings

engine: Engine = create_engine("sqlite:///:memory:", connect_args={"check_same_thread": False})
session_factory = sessionmaker(engine)


@pytest.fixture(scope="function")
def test_session() -> Generator[Session, None, None]:
    with session_factory() as session:
        yield session


@pytest.fixture(scope="function", autouse=True)
def reset_db() -> Generator[None, None, None]:
    Base.metadata.create_all(engine)
    yield
    Base.metadata.drop_all(engine)


@pytest.fixture(scope="function")
def resolver() -> AssetResolver:
    return AssetResolver(default_mappings())


@pytest.fixture(scope="function")
def seeded_mappings(test_session: Session) -> AssetResolver:
    repository = AssetMappingRepository(test_session)
    repository.upsert_many(default_mappings())
    return repository.snapshot()
