"""
Infrastructure Package
======================

Cross-module technical concerns:
- Database: async engine, sessions, declarative base
"""
