"""Services for Gatekeeper."""
