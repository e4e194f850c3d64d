from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from flightwx.config import get_settings
from flightwx.models import Base

engine = create_engine(get_settings().database_url, echo=False, pool_pre_ping=True)
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False,
                            expire_on_commit=False)


def init_db(bind=None):
    """Create all tables."""
    Base.metadata.create_all(bind=bind or engine)
