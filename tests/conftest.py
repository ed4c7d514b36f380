import pytest
from fastapi.testclient import TestClient

from app import Settings, create_app
from fund_store import FundStore
from tests.samples import API_KEY


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "funds.db")


@pytest.fixture
def store(db_path):
    s = FundStore(db_path)
    s.init_schema()
    return s


@pytest.fixture
def settings(db_path):
    return Settings(api_key=API_KEY, port=8089, database=db_path)


@pytest.fixture
def client(settings):
    with TestClient(create_app(settings)) as c:
        yield c
