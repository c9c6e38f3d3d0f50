from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

import complaint_desk.config.config as configs

engine = create_engine(configs.DATABASE_URL, future=True)
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)
Base = declarative_base()
