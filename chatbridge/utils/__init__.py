"""Utility helpers"""
from .time import utc_now, to_db_time, from_db_time

__all__ = ["utc_now", "to_db_time", "from_db_time"]
