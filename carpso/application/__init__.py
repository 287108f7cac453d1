# File: carpso/application/__init__.py
"""Application layer: use-case services, DTOs and the command handler"""
