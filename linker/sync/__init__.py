"""
Sync Module - talks to the backend and promotes guest points.

Components:
- platform_client: httpx client for the knowledge point API
- reconciliation: Promotion of local-only points on login/foreground/refresh
"""
