"""
Shared fixtures: a file backed SQLite database per test, a small schema
registry and a seeded set of records, locations and language tokens.
"""
import pytest
from sqlalchemy import create_engine, inspect
from sqlalchemy.orm import sessionmaker

from dataexport import models  # noqa: F401
from dataexport.adapters.tasks_inline import InlineTaskRunner
from dataexport.core.database import Base
from dataexport.export.sinks import ExportLimits
from dataexport.models import LanguageToken, Location, Record
from dataexport.registry import SchemaRegistry
from dataexport.services.export_service import ExportService

from sample_data import CASES, LOCATIONS, REGISTRY, TOKENS


@pytest.fixture
def engine(tmp_path):
    """File backed SQLite engine with every table created."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'export.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def registry():
    registry = SchemaRegistry.from_dict(REGISTRY)
    registry.validate()
    return registry


@pytest.fixture
def artifact_root(tmp_path):
    path = tmp_path / "out"
    path.mkdir()
    return path


@pytest.fixture
def seeded(db_session):
    """Three live cases, one deleted case, one contact, a location tree and tokens."""
    for language_id, tokens in TOKENS.items():
        for token, translation in tokens.items():
            db_session.add(LanguageToken(language_id=language_id, token=token, translation=translation))

    for location in LOCATIONS:
        db_session.add(Location(**location))

    for case in CASES:
        db_session.add(Record(id=case["id"], collection="case", data=case["data"]))

    db_session.add(Record(id="case-deleted", collection="case", data={"firstName": "Zed"}, deleted=True))
    db_session.add(Record(id="contact-1", collection="contact", data={"firstName": "Dora", "active": True}))
    db_session.add(Record(id="contact-2", collection="contact", data={"firstName": "Eli", "active": False}))
    db_session.commit()
    return db_session


@pytest.fixture
def export_service(db_session, session_factory, registry, artifact_root):
    """Service running jobs inline, with small batches so paging is exercised."""
    return ExportService(
        db_session,
        registry=registry,
        task_runner=InlineTaskRunner(mode="inline"),
        session_factory=session_factory,
        artifact_root=artifact_root,
        limits=ExportLimits(),
        batch_size=2,
        location_batch_size=2,
    )


@pytest.fixture
def view_tables(engine):
    """Callable listing export view tables still present in the database."""
    def names():
        return [name for name in inspect(engine).get_table_names() if name.startswith("zexport_")]
    return names
