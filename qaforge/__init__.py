"""
QA Forge
========

Ask natural-language questions about a codebase through an AI coding CLI
and stream the structured answer back to the QA team.
"""

__version__ = "0.1.0"
