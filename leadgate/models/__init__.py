"""leadgate models package.

Shared HTTP error contracts:

  - errors.py  — AuthDenied, RateLimited, JSON envelope builders and the
                 FastAPI exception handlers that render them
"""
