"""Flask blueprints exposing the sync control, status and data endpoints."""
