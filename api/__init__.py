"""
API routers package
Each module exports an APIRouter named `router`.
"""
from . import funds, jobs, market

__all__ = [
	"funds",
	"jobs",
	"market",
]
