"""
Fenestra: window-based pipeline orchestration.

Fires units of work on fixed, non-overlapping time windows and keeps an
auditable ledger of every window, attempt and state transition.
"""

__version__ = "0.1.0"
