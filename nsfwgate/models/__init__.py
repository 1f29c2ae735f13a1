"""nsfwgate models package.

Shared data contracts used across the scan pipeline and the HTTP layer:

  - scan.py      — requests, engine outputs, verdicts and scan results
  - responses.py — JSON body builders for results and structured errors
"""
