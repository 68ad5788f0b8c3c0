"""Local execution for hosts deployed on the current machine."""

from .session import LineCallback, LocalSession

__all__ = ["LineCallback", "LocalSession"]
