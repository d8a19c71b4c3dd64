from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

def create_db_engine(database_url: str) -> Engine:
    """
    Create the SQLAlchemy engine for the metadata store.
    """
    connect_args = {}
    if database_url.startswith("sqlite"):
        # Requests are served from several threads
        connect_args["check_same_thread"] = False
    return create_engine(database_url, connect_args=connect_args)

def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)
