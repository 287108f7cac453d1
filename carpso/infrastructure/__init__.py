# File: carpso/infrastructure/__init__.py
"""Infrastructure layer: persistence, messaging and object factories"""
