"""Database-agnostic type definitions for SQLAlchemy models.

This module provides type definitions that work with both SQLite and PostgreSQL.
"""
from sqlalchemy import JSON, Numeric, Uuid

# Use JSON instead of JSONB for cross-database compatibility
# JSONB is PostgreSQL-specific, JSON works with both SQLite and PostgreSQL
JSONType = JSON

# Native UUID on PostgreSQL, CHAR(32) on SQLite
UUIDType = Uuid

# All money columns: 12 integer digits, cents
MoneyType = Numeric(14, 2, asdecimal=True)

# Percent inputs (commission, reserve, gain): -999.9999 .. 999.9999
PercentType = Numeric(7, 4, asdecimal=True)
