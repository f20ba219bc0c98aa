"""Shared imports for all model modules."""
from datetime import datetime, date, timezone
from sqlalchemy import (
    Column, String, Text, Integer, BigInteger, Boolean,
    Date, DateTime, ForeignKey, UniqueConstraint, CheckConstraint, Index, JSON
)
from sqlalchemy.orm import relationship
from ecoticker.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)
