"""
Enliterator Pipeline - API Package
==================================

FastAPI application and administrative routes.
"""
