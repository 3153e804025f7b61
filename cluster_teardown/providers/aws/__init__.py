"""AWS discovery adapter."""
