# File: tests/__init__.py
"""Test suite for the Carpso Engine"""
