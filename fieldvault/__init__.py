"""
fieldvault: data encryption key lifecycle and automatic encryption schema
bootstrap for MongoDB client-side field-level encryption.
"""

__version__ = "0.1.0"
