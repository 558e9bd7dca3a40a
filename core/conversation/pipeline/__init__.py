"""Assistant middleware pipeline components"""

from .middleware import (
    Middleware,
    MiddlewareContext,
    FunctionMiddleware,
    LoggingMiddleware,
    ValidationMiddleware,
    RateLimitingMiddleware,
    ContentFilterMiddleware,
    ContactEnrichmentMiddleware,
    MiddlewarePipeline
)

__all__ = [
    'Middleware',
    'MiddlewareContext',
    'FunctionMiddleware',
    'LoggingMiddleware',
    'ValidationMiddleware',
    'RateLimitingMiddleware',
    'ContentFilterMiddleware',
    'ContactEnrichmentMiddleware',
    'MiddlewarePipeline',
]
