from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from config import settings

connect_args = {}
if settings.database_url.startswith("sqlite"):
    # SQLite + wątki FastAPI
    connect_args["check_same_thread"] = False

engine = create_engine(settings.database_url, pool_pre_ping=True, connect_args=connect_args)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
