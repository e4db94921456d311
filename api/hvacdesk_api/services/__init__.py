"""Service layer for billing, webhook reconciliation, impersonation and audit."""
