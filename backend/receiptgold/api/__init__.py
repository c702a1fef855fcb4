"""API package.

This exposes router modules to simplify test imports like:
	from receiptgold.api.routes.subscriptions import router
"""

__all__ = [
	"routes",
]
