"""HTTP API for the approval workflow service."""
