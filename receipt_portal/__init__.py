"""
Backend gateway for the receipt portal.

This package wires the rebate-claims workflow to a hosted backend (auth,
row-level tables and object storage) behind small port interfaces so the
workflow can run against Supabase, a direct Postgres connection or
in-memory fakes.
"""

from receipt_portal.gateway import BackendGateway

__all__ = ["BackendGateway"]
