"""
Repository activity synchronization service.
Ingests pull requests, commits, reviews and comments from the source-control
platform into the local store.
"""

__version__ = '1.0.0'
