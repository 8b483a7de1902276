"""Route modules for the API."""
from api.routes import checkout, carts, health

__all__ = ["checkout", "carts", "health"]
