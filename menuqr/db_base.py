"""
SQLAlchemy declarative base for plan, subscription and usage models.

This module contains only the Base declarative base and must not import
from models or repositories to avoid circular dependencies.
"""

from sqlalchemy.orm import declarative_base

Base = declarative_base()
