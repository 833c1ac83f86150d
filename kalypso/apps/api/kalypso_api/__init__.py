"""Kalypso API: backend-for-frontend over the Bridge.xyz platform."""

__version__ = "0.1.0"
