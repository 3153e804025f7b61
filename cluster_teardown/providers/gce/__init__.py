"""GCE discovery adapter."""
