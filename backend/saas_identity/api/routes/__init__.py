# API routes
from saas_identity.api.routes import health
from saas_identity.api.routes import webhooks_clerk
from saas_identity.api.routes import users
from saas_identity.api.routes import organizations

__all__ = ["health", "webhooks_clerk", "users", "organizations"]
