"""
RichFlow - Source Package

The event-sourced core of a personal-finance tracker. It answers
"what was my financial state on date X" by replaying an immutable
event log instead of keeping historical rows per field.

DESIGN PRINCIPLES:
1. The event log is append-only and is the source of truth
2. State is always derived, never stored as history
3. Reducers are pure and deterministic
4. Monthly checkpoints bound replay cost
5. Storage layer is swappable
"""

__version__ = "1.0.0"
__author__ = "RichFlow Team"
