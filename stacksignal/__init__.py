"""
stack-signal - detect sales-engagement tooling from scraped job postings
"""

__version__ = "0.1.0"
