# File: carpso/domain/__init__.py
"""Domain layer: entities, value objects, aggregates and pricing strategies"""
