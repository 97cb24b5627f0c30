"""Library Management System - core package

This package contains:
- Entity records (book.py, member.py)
- SQLite persistence (database.py)
- Catalog and borrowing rules (library.py)
- Line-oriented JSON front end (dispatcher.py)
- HTTP API (api.py) and CLI (main.py)
"""

__version__ = "1.0.0"
