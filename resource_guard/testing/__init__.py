"""
Test integration for Resource Guard (pytest fixtures).
"""
