from datetime import datetime
from sqlalchemy import (
    BigInteger,
    Column,
    DateTime,
    Integer,
    String,
    Text,
)

from .db import Base


class DepotMapping(Base):
    __tablename__ = "depot_mappings"

    depot_id = Column(BigInteger, primary_key=True, autoincrement=False)
    app_id = Column(BigInteger, nullable=False, index=True)
    game_name = Column(String(500), nullable=False)
    source = Column(String(20), nullable=False, default="pics")
    observed_at = Column(DateTime, default=datetime.utcnow)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class CatalogState(Base):
    __tablename__ = "catalog_state"

    state_key = Column(String(120), primary_key=True)
    state_value = Column(Text, nullable=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class DownloadRecord(Base):
    """Rows are inserted by the log ingestion pipeline; only the game columns are written here."""

    __tablename__ = "downloads"

    id = Column(Integer, primary_key=True, autoincrement=True)
    service = Column(String(40), nullable=True, index=True)
    client_ip = Column(String(64), nullable=True)
    depot_id = Column(BigInteger, nullable=True, index=True)
    game_app_id = Column(BigInteger, nullable=True)
    game_name = Column(String(500), nullable=True)
    cache_hit_bytes = Column(BigInteger, default=0)
    cache_miss_bytes = Column(BigInteger, default=0)
    started_at = Column(DateTime, default=datetime.utcnow)
    ended_at = Column(DateTime, nullable=True)
