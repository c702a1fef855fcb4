"""Core infrastructure: configuration, database, errors and observability.

Exports configuration settings so tests can write
`from receiptgold.core import settings`.
"""

from .config import settings  # noqa: F401
