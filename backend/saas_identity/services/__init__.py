"""
Identity services: webhook sync, audit log, authorization and queries.
"""
