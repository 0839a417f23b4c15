import pytest
from sqlalchemy import create_engine

from metricpulse.db.tables import metadata

from factories import add_subscriber


@pytest.fixture()
def engine(tmp_path):
    # file database so executor threads share one schema
    engine = create_engine(f"sqlite:///{tmp_path / 'metricpulse.db'}", future=True)
    metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def subscriber(engine):
    def _add(user_id: str, **kwargs):
        add_subscriber(engine, user_id, **kwargs)
        return user_id

    return _add
