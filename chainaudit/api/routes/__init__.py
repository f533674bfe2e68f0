# Routers outside the versioned audit API
from . import health

__all__ = ["health"]
