from .auth import AuthenticationMiddleware
from .idempotency import IdempotencyMiddleware

__all__ = ["AuthenticationMiddleware", "IdempotencyMiddleware"]
