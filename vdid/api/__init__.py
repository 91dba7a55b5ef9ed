"""HTTP API routers for VDID."""
