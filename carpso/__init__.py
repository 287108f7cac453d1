# File: carpso/__init__.py
"""
Carpso - dynamic parking pricing and spot lifecycle engine

Layers:
- carpso.domain: models, pricing strategies, aggregates, reservation timer
- carpso.application: DTOs, application services, command handler
- carpso.infrastructure: repositories, messaging, factories
"""

__version__ = "1.0.0"
