"""Provision a Data API Builder endpoint on Azure Container Apps."""

__version__ = "0.1.0"
