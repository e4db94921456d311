"""API routers, all mounted under ``/api/v1``."""
