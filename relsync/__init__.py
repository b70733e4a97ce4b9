"""
relsync - record reconciliation and synchronization engine.

Merges contacts and calendar events pulled from external providers into a
single local store without duplicates and without clobbering local edits.
"""

__version__ = "0.3.0"
