"""Utils package for the emission engine."""
from .logging_utils import (
    JSONFormatter,
    setup_logging,
)

__all__ = [
    'JSONFormatter',
    'setup_logging',
]
