"""SQLAlchemy Base class"""
from sqlalchemy.orm import declarative_base

Base = declarative_base()
