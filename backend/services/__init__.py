"""Clients for the external collaborators of the identity core."""
