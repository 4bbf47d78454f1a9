from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from pos_admin.domain.models import Base, SchemaMeta

SCHEMA_VERSION = 1


def build_engine(database_url: str) -> Engine:
    connect_args = {}
    if database_url.startswith("sqlite"):
        # Timers and API requests share the engine
        connect_args["check_same_thread"] = False
    return create_engine(database_url, echo=False, future=True, connect_args=connect_args)


def build_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


def init_models(engine: Engine) -> int:
    """Create missing tables and stamp the schema version; returns the stored version."""
    Base.metadata.create_all(engine)
    Session = build_session_factory(engine)
    with Session() as db:
        meta = db.get(SchemaMeta, "schema_version")
        if meta is None:
            meta = SchemaMeta(key="schema_version", value=str(SCHEMA_VERSION))
            db.add(meta)
            db.commit()
        return int(meta.value)
