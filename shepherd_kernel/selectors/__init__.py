"""Read-only query selectors."""

from shepherd_kernel.selectors.status_selector import StatusSelector

__all__ = ["StatusSelector"]
