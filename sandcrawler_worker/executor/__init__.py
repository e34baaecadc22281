"""
Order execution: browser management, page sessions and the scrape worker.
"""
from __future__ import annotations
