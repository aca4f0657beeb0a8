"""
Core utilities: exceptions and cross-cutting concerns shared by the
listener clients, reconciliation engine, persistence and API server.
"""
