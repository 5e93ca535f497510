"""Adapters for the external collaborators: vSphere and the ingestion API."""
