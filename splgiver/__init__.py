"""Vesting schedules, SQLite storage and timed token payouts for presale buyers."""

__version__ = "0.1.0"
__all__ = ["__version__"]