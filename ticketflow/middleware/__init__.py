from .identity import CallerIdentityMiddleware

__all__ = ["CallerIdentityMiddleware"]
