"""nsfwgate — rate-limited image-classification gateway.

Fronts one or more NSFW image models behind an HTTP API, enforcing per-client
request budgets and dispatching each scan to the model the caller names.
"""

__version__ = "1.0.0"
