"""Prometheus exporter for the OpenLDAP cn=Monitor backend."""

__version__ = "0.1.0"
