"""Library Desk - Services Package

This package contains service modules for hosted integrations:
- Firestore record store over REST
- Firebase identity lookup
- HTTP client abstraction
"""
