# File: tests/unit/__init__.py
"""
Unit Tests Package for the Carpso Engine

Unit tests exercise one class at a time against in-memory fakes:
- Domain models, aggregates and the reservation timer
- Pricing strategies and the pricing resolver
- Application services on the in-memory unit of work
- DTO validation, messaging and configuration
"""
