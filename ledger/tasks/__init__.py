# ledger/tasks/__init__.py
