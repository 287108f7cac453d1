# File: tests/integration/__init__.py
"""
Integration Tests Package for the Carpso Engine

Integration tests verify components working together:
1. SQLAlchemy repositories on an in-memory SQLite database
2. The command handler over fully wired services
3. End-to-end reservation flows (reserve, confirm, complete, notify)
4. The command-line entry point
"""
