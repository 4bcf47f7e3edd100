from crm.middleware.logging import LoggingMiddleware
from crm.middleware.request_id import RequestIdMiddleware

__all__ = ["LoggingMiddleware", "RequestIdMiddleware"]
