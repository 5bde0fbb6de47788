"""Backend utilities for the AR asset bundling server.

FastAPI route handlers in server.py stay thin; the work lives here:
- session sandbox lifecycle + deferred deletion
- path sanitization and containment for client-named files
- magic byte checks for images
- SSRF-guarded remote image fetching
- all-or-nothing ZIP building

Security note:
Session IDs are capability tokens (256 random bits, 64 hex chars). Anyone with
the id can reach that sandbox, so never log filesystem paths to clients or
accept ids in any non-canonical form.
"""
