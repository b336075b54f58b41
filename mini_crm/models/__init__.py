from .base import Base, BigIntPK, PreciseDateTime, TimestampMixin
from . import domain

__all__ = [
    "Base",
    "BigIntPK",
    "PreciseDateTime",
    "TimestampMixin",
    "domain",
]
