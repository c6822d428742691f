"""
Edge gateway: Clerk JWT verification and reverse proxy to the backend.
"""
