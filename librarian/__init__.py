"""Library Desk - Core Package

This package contains the core modules:
- Data models and user context (models.py)
- Record store gateway and local SQLite store (store.py, database.py)
- Filter/sort engine (query.py)
- Borrowed-book reference resolver (resolver.py)
- Book and borrower forms (forms.py, validators.py)
- Audit log (audit.py)
- Per-user library orchestration (library.py)
- CLI output helpers (ui_helpers.py)
"""
