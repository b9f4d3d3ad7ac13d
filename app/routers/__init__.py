"""
Open Bookkeeping Payroll - Routers Package

FastAPI route handlers.

Routers:
- payroll: Payroll run lifecycle, pay slips, variance and deadline queries
"""
