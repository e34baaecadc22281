"""
Sandcrawler Worker

Headless browser worker executing scrape orders sent by a sandcrawler
orchestrator and reporting results back over a message channel.
"""

__version__ = "0.4.0"
