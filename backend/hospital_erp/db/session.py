from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from hospital_erp.core.settings import settings

DATABASE_URL = settings.database_url

# SQLite is used for local runs and tests; request handlers hop threads.
connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(DATABASE_URL, pool_pre_ping=True, connect_args=connect_args)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db():
    db: Session = SessionLocal()
    try:
        yield db
    finally:
        db.close()
