"""Environment-driven settings for the gateway and backend."""
