"""
HTTP Input Plugin.

This plugin provides a REST API for DeviceLinks and device models.
"""

from plugins.inputs.http.api import HTTPInputPlugin

__all__ = ["HTTPInputPlugin"]
