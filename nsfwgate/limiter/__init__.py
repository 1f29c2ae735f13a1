"""Per-client admission control.

  - window.py     — SlidingWindowLimiter, ClientWindow, Admission
  - middleware.py — RateLimitMiddleware (HTTP 429 gate in front of every route)
"""

from nsfwgate.limiter.window import Admission, ClientWindow, SlidingWindowLimiter

__all__ = ["Admission", "ClientWindow", "SlidingWindowLimiter"]
