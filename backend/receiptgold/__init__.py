"""Top-level package for the ReceiptGold billing service.

This package keeps a user's subscription tier, monthly usage window,
billing period and tier history consistent while payment provider
webhooks arrive late, twice, or out of order. It contains the SQLAlchemy
models, the reconciliation services, the FastAPI routers that expose
them and the Dramatiq actors that run the scheduled monthly rollover.

To run the API locally you can execute:

```bash
uvicorn receiptgold.api.main:app --reload
```

The worker is started separately:

```bash
dramatiq receiptgold.worker
```

Configuration values are read from environment variables or a ``.env``
file at the project root (see ``receiptgold.core.config``).
"""

__all__: list[str] = []
