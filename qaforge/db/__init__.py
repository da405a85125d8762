"""
Database Package
================

Exports key database components. The repository lives in
qaforge.db.repository and is imported from there.
"""

from qaforge.db.models import (
    Base,
    Project, Ticket, AnalysisSession, StructuredLog,
)
from qaforge.db.connection import init_db, close_db, get_session_maker
