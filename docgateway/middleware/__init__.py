"""HTTP middleware: Prometheus instrumentation."""

from docgateway.middleware.prometheus import PrometheusMiddleware, get_metrics

__all__ = ["PrometheusMiddleware", "get_metrics"]
