"""HTTP API for the identity backend."""
