"""Infrastructure modules for the settlement engine"""

from .metrics import MetricsRecorder  # noqa: F401
from .retry import RetryPolicy, retry_async  # noqa: F401
from .token_cache import TokenCache  # noqa: F401

__all__ = [
	"MetricsRecorder",
	"RetryPolicy",
	"retry_async",
	"TokenCache",
]
