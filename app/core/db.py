from sqlmodel import Session, create_engine

from app.core.config import settings

# SQLite needs special handling: persistence writes run in worker threads
connect_args = {}
if settings.SQLALCHEMY_DATABASE_URI.startswith("sqlite"):
    connect_args["check_same_thread"] = False

engine = create_engine(settings.SQLALCHEMY_DATABASE_URI, connect_args=connect_args)


def get_session():
    with Session(engine) as session:
        yield session


def new_session() -> Session:
    """Session factory for work that runs outside a request (background tasks)."""
    return Session(engine)
