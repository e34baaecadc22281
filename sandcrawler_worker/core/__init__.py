"""
Core protocol types, result wrapping, settings and message gateways.
"""
from __future__ import annotations
