"""Ledger storage: SQLModel tables, engine policy, migrations."""
