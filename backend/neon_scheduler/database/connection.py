from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from neon_scheduler.core.config import get_settings

settings = get_settings()

connect_args = {}
if settings.database_url.startswith("sqlite"):
    # Sessions are opened from FastAPI's threadpool and the dispatcher loop
    connect_args["check_same_thread"] = False

engine = create_engine(settings.database_url, connect_args=connect_args, pool_pre_ping=True)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()
